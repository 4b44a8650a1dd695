import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis

from ..core.config import settings

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Publishes committed changes on a Redis channel for live subscribers.

    Delivery is best effort: a Redis outage is logged and never fails the write
    that produced the change.
    """

    def __init__(self, redis_client=None, channel: Optional[str] = None):
        self.redis = redis_client
        self.channel = channel or settings.CHANGE_CHANNEL

    def publish(self, collection: str, doc_id: Any, change: str, data: Optional[Dict[str, Any]] = None) -> bool:
        if self.redis is None:
            return False

        message = {
            "collection": collection,
            "id": doc_id,
            "change": change,
            "data": data or {},
            "at": datetime.utcnow().isoformat(),
        }
        try:
            self.redis.publish(self.channel, json.dumps(message, default=str))
            return True
        except redis.RedisError as e:
            logger.warning(f"Change feed publish failed for {collection}/{doc_id}: {str(e)}")
            return False

    def appointment_changed(self, appointment, change: str) -> bool:
        return self.publish("appointments", appointment.id, change, {
            "tokenNumber": appointment.token_number,
            "status": appointment.status.value,
            "paymentStatus": appointment.payment_status.value,
        })

    def invoice_changed(self, invoice, change: str) -> bool:
        return self.publish("invoices", invoice.id, change, {
            "invoiceNumber": invoice.invoice_number,
            "appointmentId": invoice.appointment_id,
            "status": invoice.status,
            "paymentStatus": invoice.payment_status,
        })
