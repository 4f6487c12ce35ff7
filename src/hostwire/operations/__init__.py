"""Hostwire Operations.

Each module validates arguments, issues requests through a Session and
maps agent error codes to typed errors:

- command: run_command, RemoteProcess
- file / directory: filesystem actions, uploads
- package: install, uninstall, query
- service: lifecycle actions, Service runnable
- template: agent-side or local rendering
- transfer: chunked bulk transfers
- payload: bundle delivery and execution
- telemetry: host facts
"""
