"""NLP utilities for routing and lightweight request classification.

Module scope:
- Model-backed decision routing with bounded retries (`intent_router`).
- Phrase heuristics that adjust routed intents (`heuristics`).
- JSON extraction from free-form model output (`model_output`).

Determinism profile:
- `heuristics` and `model_output` are pure; `intent_router` depends on model output.
"""
