"""COE orchestration core: task queue, concurrency control and protocol server."""
