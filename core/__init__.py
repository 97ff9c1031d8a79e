"""
Core business logic package for TraceCLI.

Contains the headless TrackingEngine (core.engine), the focus/pomodoro
state machine (core.focus), periodic task scheduling (core.scheduler) and
shared error types (core.errors). Zero UI dependencies.

Submodules are imported directly; tracking modules depend on core.errors
and core.scheduler, so nothing is re-exported here.
"""
