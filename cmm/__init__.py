"""Citus Membership Manager (CMM).

Keeps a Citus coordinator's worker list in sync with the healthy worker
containers of one Docker Compose project:
 - bootstrap sweep of running workers
 - docker event stream -> membership state machine
 - serialized add/remove commands with retry and backoff
 - small status API for operators

State lives in memory only; every restart and every stream disconnect is
followed by a fresh sweep.
"""
