"""
vault — team-scoped secret storage.

Secrets live in the external secrets backend; each one also has a value-less
projection in the team settings store.  Reads of a team's secrets go through
a per-team TTL cache that every write invalidates.
"""
