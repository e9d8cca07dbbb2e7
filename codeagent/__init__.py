"""Autonomous coding agent with a dual-protocol LLM transport."""
