"""Prompting package.

This package contains deterministic prompt-construction helpers used by the core
orchestration layer: router payloads, memory-update and consistency-check prompts,
worker instructions, web context blocks, and reminder prompts. It does not perform
routing, retrieval, memory merging, or model invocation.
"""
