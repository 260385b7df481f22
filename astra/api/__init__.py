"""Astra API adapter package.

Architectural role:
- Defines the external interaction boundary for the HTTP and CLI interfaces.
- Performs transport-level validation and response shaping.
- Delegates routing, dispatch, and reply lifecycle to `astra.core.engine`.

Scope:
- `http_api`: OpenAI-compatible chat endpoint plus reply, memory, reminder, and
  status endpoints.
- `main`: interactive terminal session.
"""
