"""
Helpers of the runtime environment: tasks, flags, versions, credentials lookup.

Utilities never depend on the reactor or on the engines.
"""
