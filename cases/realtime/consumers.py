import json
from channels.generic.websocket import AsyncWebsocketConsumer

from .events import UPDATES_GROUP


class CaseUpdatesConsumer(AsyncWebsocketConsumer):
    GROUP = UPDATES_GROUP

    async def connect(self):
        await self.channel_layer.group_add(self.GROUP, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "message": "connected"}))

    async def disconnect(self, close_code):
        await self.channel_layer.group_discard(self.GROUP, self.channel_name)

    async def case_status(self, event):
        # event: {"type": "case.status", "caseId": int, "pnCode": str, "oldStatus": str, "newStatus": str}
        await self.send(json.dumps(event))
