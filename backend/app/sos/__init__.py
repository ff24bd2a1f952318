"""
sos — Emergency alert activation engine.

Sub-modules:
    channels/      — Per-channel transport backends (SMS, voice call)
    engine         — SOS toggle control, one session at a time
    session        — Activation state machine: countdown, dispatch, refresh
    location       — Best-effort single reads and periodic refresh
    sharing        — User-switched continuous location sharing
    dispatcher     — Verified-contact fan-out and per-intent delivery
    collaborators  — Contact, template, position and transport contracts
    scheduler      — Single-threaded timers (asyncio / virtual clock)
    models         — Data structures shared across the engine
"""
