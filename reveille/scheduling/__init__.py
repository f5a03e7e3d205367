"""
Scheduled audio playback with local and remote outputs

This package provides the scheduling and playback engine for Reveille:

- Schedule records: one-shot, daily, and weekday schedules with soft-delete cancellation
- Recurrence: DST-safe wall-clock next-occurrence computation
- Poll loop: fires due records within a tolerance window and re-arms recurring ones
- Playback: a single owned session with position sampling and volume fades
- Outputs: local sink playback or Home Assistant media players, resolved at fire time
- Alarm bridges: local timers or retained MQTT messages as wake-up hints

Key modules:
- config: Configuration management from environment variables
- service: The AudioScheduleService facade used by the daemon
- scheduler: The poll-driven firing loop
- playback: PlaybackEngine and PlaybackSession
"""

from __future__ import annotations

__all__ = [
    "alarm_bridge",
    "config",
    "home_assistant",
    "models",
    "mqtt",
    "outputs",
    "playback",
    "recurrence",
    "schedule_store",
    "scheduler",
    "service",
]
