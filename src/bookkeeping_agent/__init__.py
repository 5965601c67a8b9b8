"""Email bookkeeping agent: risk-gated action and saga orchestration."""
