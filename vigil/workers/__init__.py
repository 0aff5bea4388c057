"""Workers — isolated monitoring processes.

Each worker runs one concern in its own OS process:
- WorkerRuntime: native/fallback state machine, heartbeat, detection loop
- StdioChannel: protocol lines on stdout, commands on stdin
- CONCERNS: the fixed registry of monitoring concerns
"""
