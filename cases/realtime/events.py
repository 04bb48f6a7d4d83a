import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer

logger = logging.getLogger(__name__)

UPDATES_GROUP = "updates"


def broadcast_case_status(case_id: int, pn_code: str, old_status: str, new_status: str) -> None:
    """Push a committed status change to every ``ws/updates/`` subscriber."""
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    event = {
        "type": "case.status",
        "caseId": case_id,
        "pnCode": pn_code,
        "oldStatus": old_status,
        "newStatus": new_status,
    }
    try:
        async_to_sync(channel_layer.group_send)(UPDATES_GROUP, event)
    except Exception:
        # the status change is already committed
        logger.warning("case status broadcast failed for case %s", case_id, exc_info=True)
