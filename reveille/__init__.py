"""
Reveille - scheduled audio playback

Root package for the Reveille audio scheduling engine: import audio files,
schedule them to play at a wall-clock time (once, daily, or on weekdays), and
play them on the local speaker or a remote media player with an optional
volume fade.

Core modules:
- audio: Local sink volume control and command-line player helpers
- blob_store: Key-value persistence with a shadow backup copy
- media_library: Managed audio files and the asset catalog
- scheduling: Schedule records, recurrence, the poll loop, and the playback engine
"""

__version__ = "0.4.0"
