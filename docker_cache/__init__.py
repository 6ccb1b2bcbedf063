"""
Script: docker_cache package
What: Holds the Python helpers behind the Docker image cache workflow steps.
Doing: Groups the load/save entrypoints, the shell helper, and the cache service client.
Why: Keeps the restore/diff/save flow readable and testable in one importable package.
Goal: Reuse Docker images built in earlier runs instead of pulling or building them again.
"""
