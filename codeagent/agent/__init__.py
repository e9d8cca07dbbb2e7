"""Agent core: orchestrator, protocol adapter and tool-call normalizer."""
