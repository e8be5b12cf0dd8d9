"""Results of a single interpreter step."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

from intakeflow.handoff import HandoffTicket


class InputSpec(BaseModel):
    """What the channel adapter should collect next."""

    input_type: str
    options: list[dict[str, str]] = Field(default_factory=list)
    required: bool = True


class Prompt(BaseModel):
    """No node change; the caller must collect an answer."""

    kind: Literal["prompt"] = "prompt"
    node_id: str
    text: str
    input_spec: InputSpec | None = None
    error: str | None = None
    attempt: int = 0


class Advanced(BaseModel):
    """The session moved; request the next prompt right away."""

    kind: Literal["advanced"] = "advanced"
    node_id: str
    text: str | None = None


class Completed(BaseModel):
    """An activation node (or the end of the graph) was reached."""

    kind: Literal["completed"] = "completed"
    record: dict[str, Any] = Field(default_factory=dict)
    text: str | None = None


class Escalated(BaseModel):
    """Terminal handoff to a human."""

    kind: Literal["escalated"] = "escalated"
    ticket: HandoffTicket


Outcome = Annotated[
    Union[Prompt, Advanced, Completed, Escalated],
    Field(discriminator="kind"),
]


class StepResult(BaseModel):
    """Everything one inbound event produced: interim texts plus the final outcome."""

    messages: list[str] = Field(default_factory=list)
    outcome: Outcome
