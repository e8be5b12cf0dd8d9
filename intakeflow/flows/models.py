"""Typed flow-definition models and the immutable ``FlowGraph``.

Nodes are a tagged variant discriminated on ``type``; each case carries only
the fields it needs.  Field names are snake_case in Python and camelCase in
flow documents (``inputType``, ``defaultNext``, ``followUps`` …).
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

NODE_TYPES = ("message", "question", "review", "activation")

SELECT_INPUT_TYPES = frozenset({"single_select", "multi_select"})
INPUT_TYPES = frozenset({
    "free_text",
    "single_select",
    "multi_select",
    "yes_no",
    "number",
    "address",
    "email",
    "phone",
    "zip_list",
    "slot_choice",
})


class _FlowModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


# ── Node parts ───────────────────────────────────────────────────────


class Option(_FlowModel):
    key: str
    label: str


class ValidationRule(_FlowModel):
    pattern: str | None = None
    error: str | None = None
    min: float | None = None
    max: float | None = None
    min_selections: int | None = None
    max_selections: int | None = None


class Branch(_FlowModel):
    """A ``transitions`` entry: first matching ``when`` wins."""

    when: Any = "always"
    next: str


class FollowUp(_FlowModel):
    """A question interleaved before the main path continues."""

    when: Any = "always"
    ask: str


class DeriveRule(_FlowModel):
    """Copy (or map) a question's answer into ``derived[fact]``."""

    fact: str
    map: dict[str, Any] | None = None
    default: Any = None


class NodeFlags(_FlowModel):
    assumption_made: bool = False
    revisit_later: bool = False


# ── Node variants ────────────────────────────────────────────────────


class _NodeBase(_FlowModel):
    id: str
    title: str | None = None
    flags: NodeFlags = NodeFlags()


class MessageNode(_NodeBase):
    type: Literal["message"]
    text: str
    next: str | None = None
    default_next: str | None = None


class QuestionNode(_NodeBase):
    type: Literal["question"]
    question: str | None = None
    text: str | None = None
    input_type: str
    options: tuple[Option, ...] = ()
    options_from: str | None = None
    required: bool = True
    validation: ValidationRule | None = None
    key: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    extract: bool = False
    derive: tuple[DeriveRule, ...] = ()
    follow_ups: tuple[FollowUp, ...] = ()
    transitions: tuple[Branch, ...] = ()
    next: str | None = None
    default_next: str | None = None

    @property
    def prompt(self) -> str:
        return self.question or self.text or ""

    @property
    def answer_key(self) -> str:
        return self.key or self.id


class ReviewNode(_NodeBase):
    type: Literal["review"]
    text: str = ""
    follow_ups: tuple[FollowUp, ...] = ()
    transitions: tuple[Branch, ...] = ()
    next: str | None = None
    default_next: str | None = None


class ActivationNode(_NodeBase):
    type: Literal["activation"]
    text: str | None = None
    confirms_booking: bool = False


FlowNode = Annotated[
    Union[MessageNode, QuestionNode, ReviewNode, ActivationNode],
    Field(discriminator="type"),
]


# ── Flow-level parts ─────────────────────────────────────────────────


class FlowMeta(_FlowModel):
    id: str
    name: str
    version: str
    max_questions: int = Field(ge=1)
    start_node_id: str
    personas: tuple[str, ...] = ()


class ConfigMapping(_FlowModel):
    """Projects one collected/derived value onto the external record."""

    target_path: str
    source: str | None = None
    source_node_id: str | None = None
    transform: str = "direct"
    transform_params: dict[str, Any] = {}

    @property
    def source_path(self) -> str:
        if self.source:
            return self.source
        return f"collected.{self.source_node_id}"


class HandoffPolicy(_FlowModel):
    max_retries: int | None = Field(default=None, ge=0)
    human_request_keywords: tuple[str, ...] = (
        "human", "agent", "real person", "representative", "call me",
    )
    negative_keywords: tuple[str, ...] = (
        "angry", "terrible", "awful", "ridiculous", "scam", "worst",
    )


class FlowDefinition(_FlowModel):
    flow: FlowMeta
    nodes: tuple[FlowNode, ...]
    enums: dict[str, tuple[str, ...]] = {}
    config_mappings: tuple[ConfigMapping, ...] = ()
    handoff_policy: HandoffPolicy = HandoffPolicy()


def _bind_source(mapping: ConfigMapping, nodes: Mapping[str, FlowNode]) -> ConfigMapping:
    """Point a ``sourceNodeId`` mapping at the key its answer is stored under."""
    if mapping.source or not mapping.source_node_id:
        return mapping
    node = nodes.get(mapping.source_node_id)
    if not isinstance(node, QuestionNode) or node.answer_key == node.id:
        return mapping
    return mapping.model_copy(update={"source": f"collected.{node.answer_key}"})


# ── Validated graph ──────────────────────────────────────────────────


@dataclass(frozen=True)
class FlowGraph:
    """Read-only snapshot of a validated flow version.

    Built once by the validator and shared across every session of that
    version.  ``nodes`` is a read-only mapping.
    """

    meta: FlowMeta
    nodes: Mapping[str, FlowNode]
    enums: Mapping[str, tuple[str, ...]]
    config_mappings: tuple[ConfigMapping, ...]
    handoff_policy: HandoffPolicy
    warnings: tuple[str, ...] = ()

    @classmethod
    def from_definition(
        cls, definition: FlowDefinition, warnings: tuple[str, ...] = (),
    ) -> FlowGraph:
        nodes: dict[str, FlowNode] = {}
        for node in definition.nodes:
            if isinstance(node, QuestionNode) and node.options_from:
                values = definition.enums[node.options_from]
                node = node.model_copy(
                    update={"options": tuple(Option(key=v, label=v) for v in values)},
                )
            nodes[node.id] = node
        mappings = tuple(_bind_source(mapping, nodes) for mapping in definition.config_mappings)
        return cls(
            meta=definition.flow,
            nodes=MappingProxyType(nodes),
            enums=MappingProxyType(dict(definition.enums)),
            config_mappings=mappings,
            handoff_policy=definition.handoff_policy,
            warnings=warnings,
        )

    @property
    def version_key(self) -> str:
        return f"{self.meta.id}@{self.meta.version}"

    @property
    def start_node_id(self) -> str:
        return self.meta.start_node_id

    @property
    def start_node(self) -> FlowNode:
        return self.nodes[self.meta.start_node_id]

    @property
    def question_count(self) -> int:
        return sum(1 for n in self.nodes.values() if isinstance(n, QuestionNode))

    def node(self, node_id: str) -> FlowNode:
        return self.nodes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __iter__(self) -> Iterator[FlowNode]:
        return iter(self.nodes.values())

    def to_document(self) -> dict[str, Any]:
        """Return the normalized flow document (camelCase, no nulls)."""
        dump = {"by_alias": True, "exclude_none": True, "mode": "json"}
        return {
            "flow": self.meta.model_dump(**dump),
            "nodes": [n.model_dump(**dump) for n in self.nodes.values()],
            "enums": {k: list(v) for k, v in self.enums.items()},
            "configMappings": [m.model_dump(**dump) for m in self.config_mappings],
            "handoffPolicy": self.handoff_policy.model_dump(**dump),
        }
