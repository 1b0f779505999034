"""Event-driven workflow automation: triggers, conditions and the engine."""
