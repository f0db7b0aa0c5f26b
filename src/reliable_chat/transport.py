from typing import Protocol, runtime_checkable


@runtime_checkable
class SessionTransport(Protocol):
    async def deliver(self, content: str, sequence_number: int) -> None: ...

    async def notice(self, text: str) -> None: ...

    async def close(self, reason: str) -> None: ...
