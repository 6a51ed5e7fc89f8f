"""
Data service caching package.

Provides the process-local cache engine consulted by the data access
coordinator, plus the Redis pub/sub transport that keeps peer nodes
coherent. One engine is created per process and passed explicitly to every
consumer.
"""
