"""Minimal demonstration of the streaming chat service."""

import sys

from chat_core.api.service import stream_chat_completion

if __name__ == "__main__":
    question = " ".join(sys.argv[1:]) or "用一句话介绍一下你自己"
    printed = 0
    print("User:", question)
    print("Assistant: ", end="", flush=True)
    for partial in stream_chat_completion(question, chat_id="demo-chat", user_id="demo-user"):
        print(partial.content[printed:], end="", flush=True)
        printed = len(partial.content)
    print()
