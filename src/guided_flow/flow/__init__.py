"""Flow domain values.

This package holds the plain data the engine works with:
- steps and their navigation rules
- the flow context and its merge rules
- the engine status machine and published state
- event payloads and the result type

Nothing here performs I/O or schedules work.
"""

__all__: list[str] = []
