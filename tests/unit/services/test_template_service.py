"""Unit tests for TemplateService."""

import pytest
from gur.infrastructure.exceptions import DuplicateTemplateError, TemplateNotFoundError
from gur.services import TaskService, TemplateService


@pytest.mark.asyncio
class TestTemplateService:
    async def test_create_and_lookup(self, templates: TemplateService) -> None:
        template = await templates.create_template(
            "bugfix", title="Fix: ", priority=1, task_type="bug", labels=["triage"]
        )

        by_name = await templates.get_template("bugfix")
        by_id = await templates.get_template(template.id)

        assert by_name.id == by_id.id == template.id
        assert by_name.type == "bug"
        assert by_name.labels == ["triage"]

    async def test_duplicate_name(self, templates: TemplateService) -> None:
        await templates.create_template("bugfix")

        with pytest.raises(DuplicateTemplateError):
            await templates.create_template("bugfix")

    async def test_list_sorted_by_name(self, templates: TemplateService) -> None:
        await templates.create_template("zeta")
        await templates.create_template("alpha")

        assert [t.name for t in await templates.list_templates()] == ["alpha", "zeta"]

    async def test_delete(self, templates: TemplateService) -> None:
        await templates.create_template("bugfix")

        deleted = await templates.delete_template("bugfix")

        assert deleted.name == "bugfix"
        with pytest.raises(TemplateNotFoundError):
            await templates.get_template("bugfix")

    async def test_task_from_template(
        self, templates: TemplateService, tasks: TaskService
    ) -> None:
        """Test explicit arguments override template defaults."""
        await templates.create_template(
            "bugfix",
            title="Bug",
            description="Steps to reproduce",
            priority=1,
            task_type="bug",
            labels=["triage"],
        )

        from_template = await tasks.create_task(template="bugfix")
        overridden = await tasks.create_task(
            "Crash on save", priority=0, labels=["ui"], template="bugfix"
        )

        assert from_template.title == "Bug"
        assert from_template.type == "bug"
        assert from_template.description == "Steps to reproduce"
        assert overridden.title == "Crash on save"
        assert overridden.priority == 0
        assert overridden.labels == ["triage", "ui"]

    async def test_unknown_template(self, tasks: TaskService) -> None:
        with pytest.raises(TemplateNotFoundError):
            await tasks.create_task("x", template="nope")
