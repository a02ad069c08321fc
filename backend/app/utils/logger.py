import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("reseller_autopilot")

# Payload keys whose values are masked before they reach the event buffer.
# Compared after dropping "_" and "-" and lowercasing, so access_token and
# accessToken both match.
SENSITIVE_KEYS = {
    "accesstoken", "refreshtoken", "token", "password", "secret",
    "authorization", "apikey", "buyeremail",
}


class AutopilotEventLogger:
    """Bounded in-memory trail of autopilot decisions and transitions.

    The persistent audit trail lives in ``autopilot_action_events``; this
    buffer exists so the admin API can show the most recent engine activity
    without a database round trip.
    """

    def __init__(self):
        self.logs = []
        self.max_logs = 1000

    def log_event(
        self,
        event_type: str,
        description: str,
        user_id: Optional[str] = None,
        action_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        status: str = "info",
        error: Optional[str] = None
    ):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "description": description,
            "user_id": user_id,
            "action_id": action_id,
            "payload": self._sanitize_credentials(payload) if payload else None,
            "status": status,
            "error": error
        }

        self.logs.append(log_entry)

        if len(self.logs) > self.max_logs:
            self.logs.pop(0)

        log_msg = f"[{event_type}] {description}"
        if error:
            logger.error(f"{log_msg} - Error: {error}")
        else:
            logger.info(log_msg)

        return log_entry

    def _sanitize_credentials(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data:
            return {}
        return self._sanitize_value(data)

    def _sanitize_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            sanitized = {}
            for key, item in value.items():
                normalized = str(key).replace("_", "").replace("-", "").lower()
                if normalized in SENSITIVE_KEYS and not isinstance(item, (dict, list)):
                    sanitized[key] = self._mask(item)
                else:
                    sanitized[key] = self._sanitize_value(item)
            return sanitized
        if isinstance(value, list):
            return [self._sanitize_value(item) for item in value]
        return value

    @staticmethod
    def _mask(value: Any) -> str:
        value = str(value)
        if len(value) > 8:
            return f"{value[:4]}...{value[-4:]}"
        return "***"

    def get_logs(self, limit: Optional[int] = None) -> list:
        if limit:
            return self.logs[-limit:]
        return self.logs

    def clear_logs(self):
        self.logs = []
        logger.info("Cleared autopilot event logs")


autopilot_logger = AutopilotEventLogger()
