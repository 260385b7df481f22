"""Web retrieval subpackage.

Architectural role:
    Provides provider-agnostic web search and page extraction used by routed
    `web_search` turns and the manual `/search` command.

Security model:
    Extracted web content is treated as untrusted context and sanitized before it is
    returned to prompt-construction layers.
"""
