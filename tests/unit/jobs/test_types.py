"""Tests for job system types."""

from leadpilot.jobs.types import JobStatus, JobType


class TestJobType:
    def test_job_types_exist(self):
        assert JobType.INVITE == "INVITE"
        assert JobType.ACCEPTANCE_CHECK == "ACCEPTANCE_CHECK"
        assert JobType.MESSAGE == "MESSAGE"
        assert JobType.HYGIENE == "HYGIENE"

    def test_lead_affecting_types(self):
        assert JobType.INVITE.affects_lead
        assert JobType.MESSAGE.affects_lead
        assert JobType.ACCEPTANCE_CHECK.affects_lead
        assert not JobType.HYGIENE.affects_lead


class TestJobStatus:
    def test_terminal_statuses(self):
        assert JobStatus.SUCCEEDED.is_terminal
        assert JobStatus.DEAD_LETTER.is_terminal
        assert not JobStatus.QUEUED.is_terminal
        assert not JobStatus.RUNNING.is_terminal
