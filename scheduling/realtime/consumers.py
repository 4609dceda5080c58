import json

from channels.generic.websocket import AsyncWebsocketConsumer

from scheduling.services.realtime import group_name


class ScheduleUpdatesConsumer(AsyncWebsocketConsumer):
    """Streams ``slots.changed`` events for one doctor's schedules.

    Clients connect to ``ws/schedules/<doctor_id>/``; anonymous clients
    are rejected.
    """

    async def connect(self):
        user = self.scope.get("user")
        if not (user and user.is_authenticated):
            await self.close()
            return
        self.group = group_name(self.scope["url_route"]["kwargs"]["doctor_id"])
        await self.channel_layer.group_add(self.group, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "group": self.group}))

    async def disconnect(self, close_code):
        group = getattr(self, "group", None)
        if group:
            await self.channel_layer.group_discard(group, self.channel_name)

    async def slots_changed(self, event):
        # event: {"type": "slots.changed", "doctorId": int, "date": "YYYY-MM-DD", "slots": [...]}
        await self.send(json.dumps(event))
