"""Server side of the gRPC runtime.

This package hosts:
- Service discovery and binding (`registry`).
- The server builder and its configurer hook (`builder`).
- The lifecycle runner and its readiness event (`server`, `events`).
- Health reporting and the default server interceptors.
"""
