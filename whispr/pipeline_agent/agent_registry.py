"""
Agent registry: which analysis stages exist, what data they need, and in
which order they run for a given tenant.

The executor never branches on stage names. Whether a stage runs is decided
here from the metadata types present in the batch, so adding a stage means
adding one descriptor (and its catalogue entry in ``stages``).
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple


@dataclass(frozen=True)
class AgentDescriptor:
    """Static description of one pipeline stage."""
    stage_id: str
    output_key: str
    required_metadata_types: Tuple[str, ...] = ()
    optional_metadata_types: Tuple[str, ...] = ()
    depends_on_stages: Tuple[str, ...] = ()
    is_terminal: bool = False
    min_records: int = 0
    input_keys: Tuple[str, ...] = ()

    @property
    def accepted_types(self) -> Set[str]:
        return set(self.required_metadata_types) | set(self.optional_metadata_types)

    def volume(self, records: Iterable[Any]) -> int:
        """Records counted against ``min_records``: the required types only, when the stage has any."""
        counted = set(self.required_metadata_types) or self.accepted_types
        return sum(1 for r in records if r.metadata_type in counted)

    def is_compatible(self, available_types: Iterable[str]) -> bool:
        """Every required metadata type is present."""
        available = set(available_types)
        return all(t in available for t in self.required_metadata_types)


DEFAULT_DESCRIPTORS: Tuple[AgentDescriptor, ...] = (
    AgentDescriptor(
        stage_id="pulse",
        output_key="pulse_results",
        required_metadata_types=("communication_metadata",),
        optional_metadata_types=("emoji_usage", "channel_activity", "message_frequency"),
        min_records=10,
    ),
    AgentDescriptor(
        stage_id="intel",
        output_key="intel_results",
        required_metadata_types=("commit_activity", "pr_lifecycle"),
        optional_metadata_types=("issue_tracking", "code_review"),
        min_records=10,
    ),
    AgentDescriptor(
        stage_id="sentinel",
        output_key="sentinel_results",
        optional_metadata_types=("communication_metadata", "commit_activity"),
        depends_on_stages=("pulse", "intel"),
        input_keys=("pulse_results", "intel_results"),
    ),
    AgentDescriptor(
        stage_id="whispr",
        output_key="whispers",
        depends_on_stages=("sentinel",),
        is_terminal=True,
        input_keys=("pulse_results", "intel_results", "sentinel_results"),
    ),
)

DEFAULT_FALLBACKS: Dict[str, Dict[str, Any]] = {
    "pulse": {"patterns": [], "insights": []},
    "intel": {"patterns": [], "insights": []},
    "sentinel": {"anomalies": []},
    "whispr": {"whispers": []},
}


class AgentRegistry:
    """Ordered collection of stage descriptors and their fallback results."""

    def __init__(self, descriptors: Optional[Iterable[AgentDescriptor]] = None,
                 fallbacks: Optional[Mapping[str, Dict[str, Any]]] = None):
        self._descriptors: Dict[str, AgentDescriptor] = {}
        self._fallbacks: Dict[str, Dict[str, Any]] = {}
        for descriptor in DEFAULT_DESCRIPTORS if descriptors is None else descriptors:
            self.register(descriptor, (fallbacks or DEFAULT_FALLBACKS).get(descriptor.stage_id, {}))

    def register(self, descriptor: AgentDescriptor, fallback: Optional[Dict[str, Any]] = None) -> None:
        if descriptor.stage_id in self._descriptors:
            raise ValueError(f"Stage {descriptor.stage_id} is already registered")
        for dependency in descriptor.depends_on_stages:
            if dependency not in self._descriptors:
                raise ValueError(
                    f"Stage {descriptor.stage_id} depends on unregistered stage {dependency}"
                )
        self._descriptors[descriptor.stage_id] = descriptor
        self._fallbacks[descriptor.stage_id] = copy.deepcopy(fallback or {})

    def get(self, stage_id: str) -> AgentDescriptor:
        try:
            return self._descriptors[stage_id]
        except KeyError:
            raise KeyError(f"Unknown stage: {stage_id}") from None

    @property
    def descriptors(self) -> List[AgentDescriptor]:
        """All stages in declaration order."""
        return list(self._descriptors.values())

    def compatible_stage_ids(self, available_types: Iterable[str]) -> Set[str]:
        available = set(available_types)
        return {d.stage_id for d in self._descriptors.values() if d.is_compatible(available)}

    def build_sequence(self, available_types: Iterable[str]) -> List[AgentDescriptor]:
        """Compatible non-terminal stages in declaration order, then compatible terminal stages."""
        available = set(available_types)
        compatible = [d for d in self._descriptors.values() if d.is_compatible(available)]
        return ([d for d in compatible if not d.is_terminal] +
                [d for d in compatible if d.is_terminal])

    def incompatible_stages(self, available_types: Iterable[str]) -> List[AgentDescriptor]:
        available = set(available_types)
        return [d for d in self._descriptors.values() if not d.is_compatible(available)]

    def is_runnable(self, descriptor: AgentDescriptor, compatible_ids: Set[str],
                    results: Mapping[str, Any]) -> bool:
        """Every dependency either runs in this workflow or already left its output."""
        for dependency in descriptor.depends_on_stages:
            if dependency in compatible_ids:
                continue
            if self.get(dependency).output_key in results:
                continue
            return False
        return True

    def fallback_for(self, stage_id: str) -> Dict[str, Any]:
        """A fresh copy, safe for the caller to mutate."""
        return copy.deepcopy(self._fallbacks.get(stage_id, {}))


def default_registry() -> AgentRegistry:
    return AgentRegistry()
