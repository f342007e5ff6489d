import logging
from datetime import datetime
from zoneinfo import ZoneInfo


class TimezoneAwareFormatter(logging.Formatter):
    """Formatter that renders ``asctime`` in the configured timezone instead of host time."""

    def __init__(self, fmt=None, datefmt=None, *, timezone_name: str = "UTC"):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.timezone = ZoneInfo(timezone_name)

    def formatTime(self, record, datefmt=None):
        moment = datetime.fromtimestamp(record.created, tz=self.timezone)
        if datefmt:
            return moment.strftime(datefmt)
        return f"{moment.strftime('%Y-%m-%d %H:%M:%S')},{int(record.msecs):03d} {moment.strftime('%Z')}"
