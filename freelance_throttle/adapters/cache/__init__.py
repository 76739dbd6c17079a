"""Cache backend adapters: the connection-owning client and usage counters."""
