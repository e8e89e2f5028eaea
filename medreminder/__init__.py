# medreminder
# Reminder scheduling & adherence engine for the Medicine Reminder app.

__version__ = "1.0.0"
