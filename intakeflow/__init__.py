"""IntakeFlow: declarative conversation flows for customer intake.

Architecture Overview
=====================

A service business describes its intake conversation as a **flow document**
(YAML or JSON).  The document is compiled once into an immutable graph and
then interpreted one inbound answer at a time:

1. **compile**: the validator collects every structural defect at once
   (dangling references, message cycles, bad predicates, unknown
   transforms) and only a clean document becomes a ``FlowGraph``.

2. **advance**: the interpreter moves a ``SessionState`` through the graph.
   Question nodes parse and validate answers, message nodes chain, review
   nodes confirm, and the activation node books the visit and projects the
   collected answers into the downstream record.

Routing: message → question (answer?) → transitions / follow-ups → ... →
review → activation (Completed) or any node → handoff (Escalated)

Key Design Decisions
--------------------
- **Closed node variants**: nodes are Pydantic models discriminated on
  ``type``; the interpreter dispatches on the variant and an unhandled one
  fails type checking.
- **Version pinning**: a session stores ``"id@version"`` and keeps using that
  graph even after a newer version is registered.
- **Escalation**: retry limits, "talk to a person" requests and negative
  sentiment all end in a handoff ticket plus a short-lived click-to-call link.
- **Scheduling**: slots are held per session with an expiring reservation;
  confirmation is idempotent.
- **Resilience**: collaborator calls go through one router with per-call
  timeouts and metrics.  The end user never sees a technical error.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (authoring).

Package Structure
-----------------
- ``intakeflow/config.py``: Explicit settings from environment variables / SSM
- ``intakeflow/errors.py``: Exception taxonomy
- ``intakeflow/flows/``: Flow models, predicates, validator and compiler CLI
- ``intakeflow/engine/``: Session state, input parsing, signals, projection, interpreter
- ``intakeflow/scheduling.py``: Slot generation, holds and bookings
- ``intakeflow/handoff.py``: Handoff tickets and click-to-call tokens
- ``intakeflow/services/``: Storage, LLM extraction, record sink, tool router, metrics
- ``intakeflow/conversation.py``: Per-session serialized advance loop
- ``intakeflow/server.py``: FastAPI application
- ``intakeflow/main.py``: CLI chat interface
- ``intakeflow/api/``: FastAPI routes and Pydantic schemas
"""
