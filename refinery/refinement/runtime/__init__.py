"""Session runtime: budget, parsing, events, model channel and orchestrator."""
