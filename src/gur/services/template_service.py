"""Named task templates."""

import sqlite3

from gur.domain.models import Template
from gur.infrastructure.database import Database
from gur.infrastructure.exceptions import DuplicateTemplateError, TemplateNotFoundError
from gur.infrastructure.logger import get_logger

logger = get_logger(__name__)


class TemplateService:
    def __init__(self, database: Database):
        self.db = database

    async def create_template(
        self,
        name: str,
        title: str = "",
        description: str = "",
        priority: int = 2,
        task_type: str = "task",
        labels: list[str] | None = None,
    ) -> Template:
        """Store a new template.

        Raises:
            DuplicateTemplateError: If a template with this name exists
        """
        template = Template(
            name=name.strip(),
            title=title,
            description=description,
            priority=priority,
            type=task_type,
            labels=labels or [],
        )
        try:
            await self.db.insert_template(template)
        except sqlite3.IntegrityError as e:
            raise DuplicateTemplateError(template.name) from e
        logger.info("template_created", template_id=template.id, name=template.name)
        return template

    async def get_template(self, name_or_id: str) -> Template:
        template = await self.db.get_template(name_or_id)
        if template is None:
            raise TemplateNotFoundError(name_or_id)
        return template

    async def list_templates(self) -> list[Template]:
        return await self.db.list_templates()

    async def delete_template(self, name_or_id: str) -> Template:
        template = await self.get_template(name_or_id)
        await self.db.delete_template(template.id)
        logger.info("template_deleted", template_id=template.id, name=template.name)
        return template
