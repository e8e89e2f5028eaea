# medreminder/errors.py


class MedReminderError(Exception):
    pass


class ValidationError(MedReminderError):
    """Bad reminder/medicine input. Raised before any store or host call."""


class PersistenceError(MedReminderError):
    """The encrypted store could not be read or written."""


class SchedulingError(MedReminderError):
    """
    The host notification facility refused or is unavailable.
    Persisted state is kept; callers report it as a warning.
    """
