"""
Exceptions raised by the arrival collector
"""


class ArrivalCollectorError(Exception):
    """Base class for collector errors"""


class PredictionServiceError(ArrivalCollectorError):
    """The external arrival prediction service could not be queried"""

    def __init__(self, stop_id: str, message: str):
        super().__init__(f"{stop_id}: {message}")
        self.stop_id = stop_id


class StoreError(ArrivalCollectorError):
    """A persistence operation failed"""


class SettingsUnavailableError(StoreError):
    """Scheduler settings could not be read"""
