"""
notifications — Asynchronous notification delivery pipeline.

Sub-modules:
    channels/        — Per-channel delivery backends (email, webhook, chat, SMS, push)
    registry         — Channel catalog + in-process implementation registry
    channel_manager  — Persistent channel state and health tracking
    queue            — Durable delivery queue with atomic claim
    retry / policy   — Backoff strategies and process-wide delivery policy
    recipients       — Entry → address resolution
    history          — Append-only attempt log, summaries, retention
    worker           — Claim, dispatch, route outcomes
    pipeline         — Wiring + Enqueue API
    scheduler        — APScheduler ticks and daily retention
"""
