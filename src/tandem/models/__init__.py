"""Data models for sessions, turns, tasks, actions and routing."""
