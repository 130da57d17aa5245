"""Hashing core: engine, circuit breaker, aggregator and orchestration."""
