"""Key store adapters.

Rate limit counters and idempotency records live behind a small atomic
key-value abstraction so the same coordinators run against process memory
in a single instance or Redis when several instances share state.
"""
