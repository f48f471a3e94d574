"""
Base class for reconciliation services
"""
import logging
from typing import Any, Dict, Iterable

from core.interfaces import ISubscriptionStore
from core.responses import ValidationException


class BaseService:
    """Shared store handle, logger and request validation"""

    def __init__(self, store: ISubscriptionStore):
        self.store = store
        self.logger = logging.getLogger(self.__class__.__name__)

    def validate_required_fields(self, data: Dict[str, Any], required_fields: Iterable[str]) -> None:
        """Raise 400 naming the first missing field"""
        for field in required_fields:
            if not data.get(field):
                raise ValidationException(f"Missing {field}")
