"""Contract the engine uses to command a controllable trainer."""

from __future__ import annotations

from typing import Literal, Protocol

TrainerStatus = Literal["disconnected", "ready", "controlled"]


class TrainerController(Protocol):
    """ERG control of a smart trainer.

    Every command may fail with ``ControllerCommandError``; the engine treats
    failures as warnings and keeps the test running uncontrolled.
    """

    @property
    def status(self) -> TrainerStatus: ...

    async def request_control(self) -> None: ...

    async def start(self) -> None: ...

    async def set_erg_watts(self, watts: int) -> None: ...
