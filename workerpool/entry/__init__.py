"""
Process entry points.

`worker` is the module a spawned worker process is started with.
"""
