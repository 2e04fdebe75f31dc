"""SQLite storage layer shared by the task engine components."""
