"""
Relational job queue for change-event notifications and vote-sheet extraction.

Modules:
    claimer: Lease eligible source records to a worker (conditional update)
    state_machine: PENDING/PROCESSING/DONE/FAILED transitions, operator requeue
    policy: Exponential backoff with jitter and attempt budgets
    outcomes: Explicit outcome values and the exception → error-kind translation
    matching: Subscription predicate evaluation
    ledger: Idempotent delivery ledger, one row per (subscription, event)
    reaper: Reclaims expired leases
    handlers: Per-kind processing strategies (change event, extraction)
    notifiers: Email / SMS / webhook senders
    extractors: AI vote-sheet parser
    digest: Batched digest delivery
    worker: Claim/process/report loop
    scheduler: APScheduler wiring for the periodic sweeps
    ingest: Producer entry point

Data flow:
    ingest.enqueue → JobClaimer.claim → handler.handle → JobStateMachine.report
    LeaseReaper.sweep unsticks leases abandoned by crashed workers
"""
