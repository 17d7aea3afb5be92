import queue

import pytest

from chat_core.domain.chat import Chat, ChatConfig, Message, Model
from chat_core.domain.exceptions import (
    ApiError,
    ChatNotFoundError,
    NetworkError,
    StoreError,
    StreamError,
    ValidationError,
)
from chat_core.domain.models import ChatMessage, ChatStreamChoice, ChatStreamChunk
from chat_core.infrastructure.storage.memory_store import InMemoryChatStore
from chat_core.usecase.chat_completion_stream import (
    ChatCompletionConfigInput,
    ChatCompletionInput,
    ChatCompletionOutput,
    ChatCompletionUseCase,
)


def _chunk(text):
    return ChatStreamChunk(
        provider="fake",
        model="gpt-3.5-turbo",
        choices=[ChatStreamChoice(index=0, delta=ChatMessage(role="assistant", content=text))],
    )


class FakeProvider:
    name = "fake"

    def __init__(self, deltas=("He", "llo", "!"), fail_after=None, open_error=None):
        self.deltas = list(deltas)
        self.fail_after = fail_after
        self.open_error = open_error
        self.requests = []

    def chat_stream(self, req):
        self.requests.append(req)
        if self.open_error is not None:
            raise self.open_error
        return self._iter()

    def _iter(self):
        for i, text in enumerate(self.deltas):
            if self.fail_after is not None and i == self.fail_after:
                raise StreamError(code="STREAM_ERROR", message="connection reset")
            yield _chunk(text)


class RecordingStore(InMemoryChatStore):
    def __init__(self, find_error=None, create_error=None, save_error=None):
        super().__init__()
        self.find_error = find_error
        self.create_error = create_error
        self.save_error = save_error
        self.created = []
        self.saved = []

    def find_chat_by_id(self, chat_id):
        if self.find_error is not None:
            raise self.find_error
        return super().find_chat_by_id(chat_id)

    def create_chat(self, chat):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(chat.id)
        super().create_chat(chat)

    def save_chat(self, chat):
        if self.save_error is not None:
            raise self.save_error
        self.saved.append(chat.id)
        super().save_chat(chat)


def _config(**kw):
    values = dict(
        model="gpt-3.5-turbo",
        model_max_tokens=4096,
        temperature=0.7,
        top_p=0.9,
        n=1,
        stop=["\n\n"],
        max_tokens=256,
        presence_penalty=0.1,
        frequency_penalty=0.2,
        initial_system_message="You are helpful",
    )
    values.update(kw)
    return ChatCompletionConfigInput(**values)


def _input(text="hi", chat_id="chat-1", **cfg):
    return ChatCompletionInput(chat_id=chat_id, user_id="user-1", user_message=text, config=_config(**cfg))


def _drain(q):
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items


def test_new_chat_round_trip():
    store = RecordingStore()
    provider = FakeProvider()
    sink = queue.Queue()

    result = ChatCompletionUseCase(store, provider, sink).execute(_input())

    assert result == ChatCompletionOutput(chat_id="chat-1", user_id="user-1", content="Hello!")
    assert [o.content for o in _drain(sink)] == ["He", "Hello", "Hello!"]
    assert store.created == ["chat-1"]
    assert store.saved == ["chat-1"]
    chat = store.find_chat_by_id("chat-1")
    assert [(m.role, m.content) for m in chat.messages] == [
        ("system", "You are helpful"),
        ("user", "hi"),
        ("assistant", "Hello!"),
    ]


def test_request_carries_history_and_sampling_params():
    provider = FakeProvider()
    ChatCompletionUseCase(RecordingStore(), provider, queue.Queue()).execute(_input())

    req = provider.requests[0]
    assert [(m.role, m.content) for m in req.messages] == [("system", "You are helpful"), ("user", "hi")]
    assert req.model == "gpt-3.5-turbo"
    assert req.temperature == 0.7
    assert req.top_p == 0.9
    assert req.stop == ["\n\n"]
    assert req.max_tokens == 256
    assert req.presence_penalty == 0.1
    assert req.frequency_penalty == 0.2


def test_existing_chat_is_not_recreated():
    store = RecordingStore()
    model = Model(name="gpt-3.5-turbo", max_tokens=4096)
    chat = Chat.new("user-1", Message.new("system", "old system", model), ChatConfig(model=model), chat_id="chat-1")
    chat.add_message(Message.new("user", "first", model))
    chat.add_message(Message.new("assistant", "answer", model))
    store.create_chat(chat)
    store.created.clear()
    provider = FakeProvider(deltas=["ok"])

    result = ChatCompletionUseCase(store, provider, queue.Queue()).execute(
        _input("second", initial_system_message="ignored")
    )

    assert result.content == "ok"
    assert store.created == []
    saved = store.find_chat_by_id("chat-1")
    assert [(m.role, m.content) for m in saved.messages] == [
        ("system", "old system"),
        ("user", "first"),
        ("assistant", "answer"),
        ("user", "second"),
        ("assistant", "ok"),
    ]
    assert len(provider.requests[0].messages) == 4


def test_missing_chat_id_creates_chat_with_generated_id():
    store = RecordingStore()
    result = ChatCompletionUseCase(store, FakeProvider(), queue.Queue()).execute(_input(chat_id=None))
    assert result.chat_id
    assert store.created == [result.chat_id]


def test_partials_grow_by_prefix():
    deltas = ["a", "", "bc", "d", "efg"]
    sink = queue.Queue()
    result = ChatCompletionUseCase(RecordingStore(), FakeProvider(deltas=deltas), sink).execute(_input())

    partials = [o.content for o in _drain(sink)]
    assert len(partials) == len(deltas)
    previous = ""
    for delta, content in zip(deltas, partials):
        assert content == previous + delta
        previous = content
    assert result.content == "".join(deltas)


def test_partials_carry_chat_and_user_ids():
    sink = queue.Queue()
    ChatCompletionUseCase(RecordingStore(), FakeProvider(), sink).execute(_input())
    assert {(o.chat_id, o.user_id) for o in _drain(sink)} == {("chat-1", "user-1")}


def test_mid_stream_error_saves_nothing():
    store = RecordingStore()
    sink = queue.Queue()

    with pytest.raises(StreamError) as exc:
        ChatCompletionUseCase(store, FakeProvider(fail_after=2), sink).execute(_input())

    assert exc.value.message == "error streaming response: connection reset"
    assert isinstance(exc.value.__cause__, StreamError)
    assert [o.content for o in _drain(sink)] == ["He", "Hello"]
    assert store.saved == []
    # the newly created chat keeps only its system message
    assert [m.role for m in store.find_chat_by_id("chat-1").messages] == ["system"]


def test_lookup_error_aborts_before_provider():
    store = RecordingStore(find_error=StoreError(code="STORE_READ_ERROR", message="disk on fire"))
    provider = FakeProvider()

    with pytest.raises(StoreError) as exc:
        ChatCompletionUseCase(store, provider, queue.Queue()).execute(_input())

    assert exc.value.message == "error fetching existing chat: disk on fire"
    assert exc.value.code == "STORE_READ_ERROR"
    assert provider.requests == []
    assert store.created == []


def test_not_found_is_typed_not_textual():
    store = RecordingStore(find_error=ChatNotFoundError(message="something else entirely"))
    ChatCompletionUseCase(store, FakeProvider(), queue.Queue()).execute(_input())
    assert store.created == ["chat-1"]


def test_create_error_is_reported():
    store = RecordingStore(create_error=StoreError(code="STORE_WRITE_ERROR", message="read-only"))
    provider = FakeProvider()
    with pytest.raises(StoreError) as exc:
        ChatCompletionUseCase(store, provider, queue.Queue()).execute(_input())
    assert exc.value.message == "error persisting new chat: read-only"
    assert provider.requests == []


def test_invalid_new_chat_config():
    provider = FakeProvider()
    with pytest.raises(ValidationError) as exc:
        ChatCompletionUseCase(RecordingStore(), provider, queue.Queue()).execute(_input(temperature=5))
    assert exc.value.message.startswith("error creating new chat: ")
    assert provider.requests == []


def test_empty_initial_system_message():
    with pytest.raises(ValidationError) as exc:
        ChatCompletionUseCase(RecordingStore(), FakeProvider(), queue.Queue()).execute(
            _input(initial_system_message="")
        )
    assert exc.value.message == "error creating new chat: error creating initial message: content is empty"


def test_user_message_too_long_fails_before_network():
    store = RecordingStore()
    provider = FakeProvider()
    with pytest.raises(ValidationError) as exc:
        ChatCompletionUseCase(store, provider, queue.Queue()).execute(
            _input("one two three four five", model_max_tokens=4)
        )
    assert exc.value.code == "MESSAGE_TOO_LONG"
    assert exc.value.message.startswith("error creating user message: ")
    assert provider.requests == []
    assert store.saved == []


def test_ended_chat_rejects_user_message():
    store = RecordingStore()
    model = Model(name="gpt-3.5-turbo", max_tokens=4096)
    chat = Chat.new("user-1", Message.new("system", "sys", model), ChatConfig(model=model), chat_id="chat-1")
    chat.end()
    store.create_chat(chat)
    provider = FakeProvider()

    with pytest.raises(ValidationError) as exc:
        ChatCompletionUseCase(store, provider, queue.Queue()).execute(_input())

    assert exc.value.code == "CHAT_ENDED"
    assert exc.value.message.startswith("error adding new message: ")
    assert provider.requests == []


def test_provider_open_error():
    store = RecordingStore()
    provider = FakeProvider(open_error=NetworkError(code="NETWORK_ERROR", message="dns failure"))
    with pytest.raises(NetworkError) as exc:
        ChatCompletionUseCase(store, provider, queue.Queue()).execute(_input())
    assert exc.value.message == "error creating chat completion: dns failure"
    assert store.saved == []


def test_provider_api_error_keeps_status():
    provider = FakeProvider(open_error=ApiError(code="API_ERROR", message="unauthorized", http_status=401))
    with pytest.raises(ApiError) as exc:
        ChatCompletionUseCase(RecordingStore(), provider, queue.Queue()).execute(_input())
    assert exc.value.http_status == 401


def test_empty_stream_cannot_build_assistant_message():
    store = RecordingStore()
    with pytest.raises(ValidationError) as exc:
        ChatCompletionUseCase(store, FakeProvider(deltas=[]), queue.Queue()).execute(_input())
    assert exc.value.message == "error creating assistant message: content is empty"
    assert store.saved == []


def test_save_error_is_reported():
    store = RecordingStore(save_error=StoreError(code="STORE_WRITE_ERROR", message="quota exceeded"))
    sink = queue.Queue()
    with pytest.raises(StoreError) as exc:
        ChatCompletionUseCase(store, FakeProvider(), sink).execute(_input())
    assert exc.value.message == "error saving chat: quota exceeded"
    assert len(_drain(sink)) == 3


def test_context_window_erases_oldest_messages():
    store = RecordingStore()
    sink = queue.Queue()
    usecase = ChatCompletionUseCase(store, FakeProvider(deltas=["x y z"]), sink)

    usecase.execute(_input("a b", model_max_tokens=8, initial_system_message="be brief"))
    usecase.execute(_input("c d", model_max_tokens=8))

    chat = store.find_chat_by_id("chat-1")
    assert [(m.role, m.content) for m in chat.messages] == [
        ("assistant", "x y z"),
        ("user", "c d"),
        ("assistant", "x y z"),
    ]
    assert [m.content for m in chat.erased_messages] == ["be brief", "a b"]
    assert chat.token_usage == 8


class BrokenChunkProvider(FakeProvider):
    def _iter(self):
        yield _chunk("He")
        raise AttributeError("'NoneType' object has no attribute 'get'")


def test_unexpected_stream_exception_becomes_stream_error():
    store = RecordingStore()
    sink = queue.Queue()

    with pytest.raises(StreamError) as exc:
        ChatCompletionUseCase(store, BrokenChunkProvider(), sink).execute(_input())

    assert exc.value.code == "STREAM_ERROR"
    assert exc.value.message.startswith("error streaming response: ")
    assert isinstance(exc.value.__cause__, AttributeError)
    assert [o.content for o in _drain(sink)] == ["He"]
    assert store.saved == []
