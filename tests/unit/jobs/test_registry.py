"""Tests for the action registry."""

import pytest

from leadpilot.jobs.registry import ActionRegistry
from leadpilot.jobs.types import JobType


class TestActionRegistry:
    def test_register_handler(self):
        registry = ActionRegistry()

        async def dummy_handler(payload, ctx):
            return None

        registry.register(JobType.INVITE, dummy_handler)
        assert registry.get_handler(JobType.INVITE) == dummy_handler
        assert JobType.INVITE in registry

    def test_get_unregistered_handler_raises(self):
        registry = ActionRegistry()
        with pytest.raises(KeyError, match="MESSAGE"):
            registry.get_handler(JobType.MESSAGE)

    def test_decorator_registration(self):
        registry = ActionRegistry()

        @registry.handler(JobType.HYGIENE)
        async def hygiene_handler(payload, ctx):
            pass

        assert registry.get_handler(JobType.HYGIENE) == hygiene_handler

    def test_job_types_in_registration_order(self):
        registry = ActionRegistry()

        async def noop(payload, ctx):
            pass

        registry.register(JobType.MESSAGE, noop)
        registry.register(JobType.INVITE, noop)

        assert registry.job_types == [JobType.MESSAGE, JobType.INVITE]
