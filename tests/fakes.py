"""Scripted backend used by the generation and summarizer tests."""

import asyncio
import json

from chatvault.backends.base import BackendResponse, BaseBackend


def sse(content="", reasoning=""):
    delta = {}
    if content:
        delta["content"] = content
    if reasoning:
        delta["reasoning_content"] = reasoning
    return "data: " + json.dumps({"choices": [{"delta": delta}]})


class FakeBackend(BaseBackend):
    """
    Streams the given chunks. With hold=True it stops after the first
    chunk and waits until release() (or cancellation).
    """

    def __init__(self, chunks=("Hello", " there"), reply="summary text", hold=False, fail=False):
        super().__init__(name="fake", url="http://fake", default_model="fake-model")
        self.chunks = list(chunks)
        self.reply = reply
        self.hold = hold
        self.fail = fail
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.bodies = []

    def release(self):
        self.gate.set()

    async def forward(self, body):
        self.bodies.append(body)
        if self.fail:
            return BackendResponse(ok=False, error="boom", backend_name=self.name)
        return BackendResponse(
            ok=True,
            data={"choices": [{"message": {"content": self.reply}}]},
            backend_name=self.name,
        )

    async def forward_stream(self, body):
        self.bodies.append(body)
        yield ": keep-alive"
        for i, chunk in enumerate(self.chunks):
            yield sse(chunk)
            if i == 0:
                self.started.set()
                if self.hold:
                    await self.gate.wait()
            if self.fail:
                raise ConnectionError("stream dropped")
        yield "data: [DONE]"
