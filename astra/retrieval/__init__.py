"""Retrieval package.

Architectural role:
    Acquires external context for the web search sub-task of the dispatcher.

Scope:
    - `web`: external web search/extraction pipeline for untrusted context.
"""
