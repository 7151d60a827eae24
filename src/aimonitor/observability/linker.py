"""MonitorEventLinker: isolated event namespace for aimonitor observability.

All aimonitor subscribers register here. Separate from any other
pyventus usage in the process.
"""

from __future__ import annotations

from pyventus.events import EventLinker


class MonitorEventLinker(EventLinker):
    """Isolated event namespace for aimonitor observability."""

    pass
