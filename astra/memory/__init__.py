"""Memory subsystem package.

Architectural role:
    Holds the long-term memory store and the deduplicating merge applied after each
    memory-update model call:
    - `memory_system`: entry type, canonical keys, delta decoding, merge, status.

Persistence is the embedding application's concern; entries live in
`astra.core.state.AssistantState.memories`.
"""
