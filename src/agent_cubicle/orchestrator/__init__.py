"""Agent instance pool and task queue orchestrator.

Three components share one event bus and one durable store:

- ``InstanceManager`` spawns agent CLIs per user, tracks their status and
  notices when a busy agent has gone quiet for the silence threshold.
- ``TaskScheduler`` drains the durable FIFO queue with a single consumer,
  binds each task to an instance and enforces the per-task timeout.
- ``NotificationBroker`` turns quiet agents into human-addressed
  notifications and routes replies back into the agent's stdin.

The silence heuristic cannot tell a long-running command that prints
nothing from a prompt waiting for input; both produce a notification.
"""
