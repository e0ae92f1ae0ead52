"""
jobstream Services

Services behind the job progress stream:
- events: Event model, summary projection and SSE framing
- event_log: Durable append-only per-job event logs
- channel: Best-effort publish/subscribe notifications
- worker: Job execution pipeline that appends and publishes
- streaming: Connection registry, fan-out engine and SSE server
- cleanup: Supervisor reclaiming idle connections and expired logs
"""
