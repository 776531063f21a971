"""
Test features that record their lifecycle calls.

Usage:
    from resources.tests.helpers.features import define_feature
    journal = []
    A = define_feature("alpha", journal=journal)
    B = define_feature("beta", dependencies=["alpha"], journal=journal)
"""

from __future__ import annotations

import asyncio
from typing import Any

from featurebot.features.base import Feature
from featurebot.features.interfaces import FeatureCapability, FeatureCommand, FeatureMetadata


class RecordingFeature(Feature):
    metadata = FeatureMetadata(name="recording")
    capabilities = FeatureCapability.HANDLERS | FeatureCapability.COMMANDS

    journal: list[tuple[str, str]] = []
    fail_phase: str | None = None
    hang_on_stop: bool = False
    command_names: tuple[str, ...] = ()

    def __init__(self):
        super().__init__()
        self.received: list[Any] = []

    async def on_initialize(self) -> None:
        self._record("initialize")

    async def on_start(self) -> None:
        self._record("start")

    async def on_stop(self) -> None:
        self._record("stop")
        if self.hang_on_stop:
            await asyncio.sleep(3600)

    def get_handlers(self):
        return {
            f"{self.metadata.name}.ping": self.handle_ping,
            "shared.event": self.handle_ping
        }

    def get_commands(self) -> list[FeatureCommand]:
        return [
            FeatureCommand(name=name, description=f"{name} command", handler=self.handle_command)
            for name in self.command_names
        ]

    async def handle_ping(self, payload: Any) -> None:
        self.received.append(payload)

    async def handle_command(self, *args: Any) -> str:
        return f"{self.metadata.name}:{' '.join(str(arg) for arg in args)}"

    def _record(self, phase: str) -> None:
        self.journal.append((self.metadata.name, phase))
        if self.fail_phase == phase:
            raise RuntimeError(f"{self.metadata.name} failed in {phase}")


def define_feature(
    name: str,
    dependencies: list[str] | None = None,
    journal: list[tuple[str, str]] | None = None,
    fail_phase: str | None = None,
    hang_on_stop: bool = False,
    commands: tuple[str, ...] = (),
    settings_schema: dict[str, Any] | None = None,
    default_settings: dict[str, Any] | None = None
) -> type[RecordingFeature]:
    """Create a RecordingFeature subclass with its own metadata."""
    metadata = FeatureMetadata(
        name=name,
        dependencies=list(dependencies or []),
        events=[f"{name}.ping", "shared.event"],
        commands=list(commands),
        settings_schema=settings_schema or {},
        default_settings=default_settings or {}
    )
    return type(
        f"{name.title().replace('_', '')}Feature",
        (RecordingFeature,),
        {
            "metadata": metadata,
            "journal": journal if journal is not None else [],
            "fail_phase": fail_phase,
            "hang_on_stop": hang_on_stop,
            "command_names": tuple(commands)
        }
    )
