"""
Job Queue — bounded-concurrency receiver for an SQS queue.

Replaces hand-written receive loops with a self-pacing poller:
- Worker loops long-poll the queue and dispatch each message to a handler
- At most max_concurrency handlers run at once; a full pool pauses fetching
- Failed fetches back off exponentially (1s → 300s), shared across workers
- stop() drains in-flight handlers before returning
"""
