import json
import os
import datetime
import threading
from typing import Any, Dict, List, Optional

from utils.logger import get_logger

logger = get_logger("error_manager")


class ErrorManager:
    """
    Centralized manager for logging and retrieving pipeline errors.
    """

    LOG_FILE = os.getenv("FRAMEFORGE_ERROR_LOG", "outputs/api_errors.log")
    MAX_ENTRIES = 100
    _lock = threading.Lock()

    @classmethod
    def log_error(
        cls,
        service: str,
        error_message: str,
        details: Any = None,
        severity: str = "error",
        kind: Optional[str] = None,
        log_file: Optional[str] = None,
    ):
        """
        Log an error to the log file.

        Args:
            service: Name of the stage/agent (e.g., "DirectorAgent", "ArtistAgent")
            error_message: Brief error description
            details: Additional context or full traceback
            severity: Error severity ("warning", "error", "critical")
            kind: ErrorKind value for taxonomy errors
            log_file: log path for this entry (default: LOG_FILE)
        """
        path = log_file or cls.LOG_FILE
        entry = {
            "timestamp": datetime.datetime.now().isoformat(),
            "service": service,
            "message": error_message,
            "details": str(details) if details else None,
            "severity": severity,
            "kind": kind,
        }

        log_dir = os.path.dirname(path)
        try:
            with cls._lock:
                if log_dir:
                    os.makedirs(log_dir, exist_ok=True)

                logs = []
                if os.path.exists(path):
                    try:
                        with open(path, "r", encoding="utf-8") as f:
                            file_content = f.read()
                            if file_content.strip():
                                logs = json.loads(file_content)
                    except json.JSONDecodeError:
                        logs = []  # reset if corrupted

                logs.append(entry)
                if len(logs) > cls.MAX_ENTRIES:
                    logs = logs[-cls.MAX_ENTRIES:]

                with open(path, "w", encoding="utf-8") as f:
                    json.dump(logs, f, indent=2, ensure_ascii=False)

            logger.log(
                40 if severity in ("error", "critical") else 30,
                f"[{severity.upper()}] {service}: {error_message}",
            )
        except OSError as e:
            logger.critical(f"Failed to write to error log: {e}")
            logger.critical(f"Original Error: [{service}] {error_message}")

    @classmethod
    def get_recent_errors(cls, limit: int = 20, log_file: Optional[str] = None) -> List[Dict]:
        """Get recent error logs, newest first."""
        path = log_file or cls.LOG_FILE
        if not os.path.exists(path):
            return []

        try:
            with open(path, "r", encoding="utf-8") as f:
                logs = json.load(f)
            return sorted(logs, key=lambda x: x["timestamp"], reverse=True)[:limit]
        except (OSError, json.JSONDecodeError):
            return []

    @classmethod
    def clear_logs(cls, log_file: Optional[str] = None):
        """Clear the error log file."""
        path = log_file or cls.LOG_FILE
        if os.path.exists(path):
            os.remove(path)
