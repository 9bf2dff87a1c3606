"""
Centralized Error Logging System
Structured settlement error log plus reconciliation alerts for money moved without a record
"""

import logging
import json
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any


class CentralizedLogger:
    """Structured JSON error log for settlement failures"""

    def __init__(self, log_dir: str = "logs", filename: str = "settlement_errors.log"):
        self.logger = logging.getLogger("settlement_errors")
        self.log_path = os.path.join(log_dir, filename)
        self.setup_file_handler(log_dir)

    def setup_file_handler(self, log_dir: str):
        """Setup file logging for persistent error tracking"""
        try:
            os.makedirs(log_dir, exist_ok=True)
            if any(getattr(h, "baseFilename", None) == os.path.abspath(self.log_path)
                   for h in self.logger.handlers):
                return

            file_handler = logging.FileHandler(self.log_path, mode='a', encoding='utf-8')
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            ))
            self.logger.addHandler(file_handler)
            self.logger.setLevel(logging.ERROR)

        except Exception as e:
            logging.getLogger(__name__).warning(f"Failed to setup file logging: {e}")

    def log_error(self,
                  error_type: str,
                  message: str,
                  user_id: Optional[str] = None,
                  context: Optional[Dict[str, Any]] = None,
                  level: int = logging.ERROR):
        """Log error with structured data"""
        error_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error_type": error_type,
            "message": message,
            "user_id": user_id,
            "context": context or {}
        }
        self.logger.log(level, json.dumps(error_data, ensure_ascii=False, default=str))

    def log_critical_error(self, message: str, details: Optional[Dict] = None):
        """Log critical system errors"""
        self.log_error("CRITICAL", message, context=details, level=logging.CRITICAL)

    def log_reconciliation_alert(self, message: str, escrow_id: str, tx_hash: Optional[str],
                                 details: Optional[Dict] = None):
        """Funds moved on-chain but the matching escrow record was not written"""
        context = {"escrow_id": escrow_id, "tx_hash": tx_hash}
        context.update(details or {})
        self.log_error("RECONCILIATION_ALERT", message, context=context, level=logging.CRITICAL)


# Global instance
centralized_logger = CentralizedLogger()
