"""Job payloads, orchestration and import processors."""
