"""
Versioned pipeline registry.

Callers pin pipelines by semantic version:

    deploy          latest registered deploy
    deploy@v1       highest 1.x.y
    deploy@v1.2     highest 1.2.y
    deploy@1.2.3    exactly 1.2.3
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from tfpipelines.pipelines import CIPipeline, DeployPipeline, DestroyPipeline

Version = Tuple[int, int, int]

_VERSION = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?$")


class PipelineNotFoundError(LookupError):
    """No registered pipeline matches the requested name and version."""


def parse_version(text: str) -> Version:
    match = _VERSION.match(text)
    if not match or match.group(3) is None:
        raise ValueError(f"Invalid version: '{text}' (expected MAJOR.MINOR.PATCH)")
    return tuple(int(part) for part in match.groups())


@dataclass(frozen=True)
class RegisteredPipeline:
    name: str
    version: Version
    pipeline_class: Any

    @property
    def ref(self) -> str:
        return f"{self.name}@{'.'.join(str(p) for p in self.version)}"


class PipelineRegistry:
    """Pipelines by name and semantic version."""

    def __init__(self):
        self._entries: Dict[str, List[RegisteredPipeline]] = {}

    def register(self, name: str, version: str, pipeline_class: Any) -> RegisteredPipeline:
        parsed = parse_version(version)
        entries = self._entries.setdefault(name, [])
        if any(e.version == parsed for e in entries):
            raise ValueError(f"{name}@{version} is already registered")
        entry = RegisteredPipeline(name, parsed, pipeline_class)
        entries.append(entry)
        entries.sort(key=lambda e: e.version)
        return entry

    def names(self) -> List[str]:
        return sorted(self._entries)

    def resolve(self, ref: str) -> RegisteredPipeline:
        """
        Resolve a reference like "deploy@v1" to a registered pipeline.

        Raises:
            PipelineNotFoundError: Unknown name, bad pin, or no version satisfies the pin
        """
        name, _, pin = ref.partition("@")
        entries = self._entries.get(name.strip())
        if not entries:
            raise PipelineNotFoundError(
                f"Unknown pipeline: '{name}' (registered: {', '.join(self.names())})"
            )
        if not pin:
            return entries[-1]

        match = _VERSION.match(pin.strip())
        if not match:
            raise PipelineNotFoundError(f"Invalid version pin: '{pin}'")
        wanted: List[Optional[int]] = [int(g) if g is not None else None for g in match.groups()]

        candidates = [
            e for e in entries
            if all(w is None or w == have for w, have in zip(wanted, e.version))
        ]
        if not candidates:
            available = ", ".join(e.ref for e in entries)
            raise PipelineNotFoundError(f"No {name} pipeline matches @{pin} (available: {available})")
        return candidates[-1]


def default_registry() -> PipelineRegistry:
    registry = PipelineRegistry()
    registry.register("ci", "1.0.0", CIPipeline)
    registry.register("deploy", "1.0.0", DeployPipeline)
    registry.register("destroy", "1.0.0", DestroyPipeline)
    return registry
