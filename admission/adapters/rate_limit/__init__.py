"""Rate limiting adapters.

Fixed window, sliding window and token bucket limiters share one ``allow``
signature and keep all of their counters in a key store, so the request
coordinator stays algorithm-agnostic and several instances can share limits.
"""
