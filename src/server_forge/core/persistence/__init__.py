from server_forge.core.persistence.action_log import ActionLog, LogEntry, generate_run_id

__all__ = ["ActionLog", "LogEntry", "generate_run_id"]
