"""Core orchestration package.

Architectural role:
    Exposes the turn-orchestration layer that sits between API/CLI entrypoints and
    lower-level subsystems (routing, memory, reminders, prompting, web retrieval,
    and model adapters).

Composition:
    - `engine`: routing and task dispatch for one user turn.
    - `lifecycle`: reply cancellation, retry, and exactly-once finalization.
    - `consistency`: post-hoc memory contradiction review.
    - `state`: the document state owned by the event loop.
    - `routing_types`: routing decision schema produced by the router.

Determinism and side effects:
    Package import itself is deterministic and side-effect free. Runtime side effects
    are performed by `engine` and `lifecycle` while replies are processed.
"""
