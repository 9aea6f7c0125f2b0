"""
Work queues and background loops for the confirmation workflow.

- claims: readiness predicates for the due-retry, stale-in-progress and
  stale-queued queues (conditional-update claims in the store)
- dispatcher: post-commit delivery of outbound events (WhatsApp fallback)
- sweepers: independent periodic loops over the queues
- supervisor: one process-owned handle that starts and stops them
"""
