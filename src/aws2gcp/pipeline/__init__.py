"""Migration pipeline: job state, poller, stages and orchestrator."""
