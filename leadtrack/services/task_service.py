import logging

from leadtrack.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class TaskService:
    """Personal to-do list kept next to the lead pipeline."""

    def __init__(self, gateway, capabilities=None):
        self.gateway = gateway
        self.capabilities = capabilities

    @property
    def available(self) -> bool:
        return self.capabilities is None or self.capabilities.has("personal_tasks")

    async def list_open(self, user_id: str):
        if not self.available:
            logger.warning("Table 'personal_tasks' does not exist yet.")
            return []
        return await self.gateway.fetch_personal_tasks(user_id)

    async def add(self, user_id: str, text: str):
        text = (text or "").strip()
        if not text:
            raise InvalidTransition("Task text cannot be empty")
        return await self.gateway.add_personal_task(user_id, text)

    async def complete(self, task_id: str):
        await self.gateway.complete_personal_task(task_id)
