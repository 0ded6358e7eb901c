"""
Relay App - Incremental Timeline Sync

Responsibilities:
- Scheduled execution (cron via APScheduler, or RUN_ONCE)
- Resumable pagination of each identity's upstream timeline
- Durable, id-deduplicated record storage, one partition per identity
- Ordered delivery of undelivered records to the identity's Telegram channel
- Compaction of delivered records; resume from a saved cursor after failures
- Optional Redis Pub/Sub event per identity cycle

Storage:
- partition `timeline:<identity>`: record key -> JSON record
- partition `state`: `<identity>` -> fetch cursor, `<identity>:delivery` -> delivery cursor
"""
