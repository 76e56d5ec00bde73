"""
Realtime decision updates.

Responsibilities:
- Fan out full decision snapshots to everyone watching a group.
- Serve them as Server-Sent Events.
- On the consuming side, prefer the live stream and fall back to polling.
"""
