"""JSON-file stores for workflows, runs, events and checkpoints."""
