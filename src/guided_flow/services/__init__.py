"""Engine services: queueing, events, navigation, checklists, persistence and errors."""

__all__: list[str] = []
