"""
Test suite for feedback_hub/jobs/models.py

Coverage targets:
- Lane parsing
- Backoff delay computation and option parsing
- Job option defaults and validation
- Job serialization
"""

import pytest

from core.exceptions import InvalidLaneError, ValidationError
from feedback_hub.jobs.models import (
    BackoffPolicy,
    BackoffType,
    Job,
    JobOptions,
    JobStatus,
    Lane,
)


class TestLane:
    def test_parse_wire_name(self):
        assert Lane.parse("send-email") is Lane.SEND_EMAIL
        assert Lane.parse("notify-student") is Lane.NOTIFY_STUDENT

    def test_parse_member_passthrough(self):
        assert Lane.parse(Lane.ANALYTICS) is Lane.ANALYTICS

    def test_unknown_lane(self):
        with pytest.raises(InvalidLaneError) as exc_info:
            Lane.parse("send-sms")

        assert "send-sms" in exc_info.value.message
        assert "send-email" in exc_info.value.details["valid_lanes"]


class TestJobStatus:
    def test_terminal_states(self):
        assert JobStatus.COMPLETED.is_terminal
        assert JobStatus.FAILED.is_terminal
        assert not JobStatus.PENDING.is_terminal
        assert not JobStatus.ACTIVE.is_terminal


class TestBackoffPolicy:
    def test_exponential_doubles(self):
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=1000)

        assert policy.delay_for(1) == 1000
        assert policy.delay_for(2) == 2000
        assert policy.delay_for(3) == 4000

    def test_fixed_is_constant(self):
        policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=3000)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [3000, 3000, 3000]

    def test_parse_bare_integer_is_fixed(self):
        policy = BackoffPolicy.parse(5000)

        assert policy.type == BackoffType.FIXED
        assert policy.delay_ms == 5000

    def test_parse_mapping(self):
        policy = BackoffPolicy.parse({"type": "exponential", "delay": 250})

        assert policy == BackoffPolicy(BackoffType.EXPONENTIAL, 250)

    def test_parse_none_uses_default(self):
        default = BackoffPolicy(BackoffType.FIXED, 10)
        assert BackoffPolicy.parse(None, default) is default

    @pytest.mark.parametrize("spec", [-1, True, "fast", {"type": "linear"}, {"delay": -5}])
    def test_parse_rejects_invalid(self, spec):
        with pytest.raises(ValidationError):
            BackoffPolicy.parse(spec)


class TestJobOptions:
    @pytest.fixture
    def defaults(self):
        return JobOptions(attempts=3, backoff=BackoffPolicy(BackoffType.EXPONENTIAL, 1000))

    def test_none_returns_defaults(self, defaults):
        assert JobOptions.parse(None, defaults) is defaults

    def test_overrides(self, defaults):
        options = JobOptions.parse({"attempts": 5, "backoff": 3000, "delay": 200}, defaults)

        assert options.attempts == 5
        assert options.backoff == BackoffPolicy(BackoffType.FIXED, 3000)
        assert options.delay_ms == 200

    def test_backoff_ms_alias(self, defaults):
        options = JobOptions.parse({"backoffMs": 100}, defaults)
        assert options.backoff.delay_ms == 100

    @pytest.mark.parametrize("attempts", [0, -1, 1.5, "3", True])
    def test_invalid_attempts(self, defaults, attempts):
        with pytest.raises(ValidationError):
            JobOptions.parse({"attempts": attempts}, defaults)

    def test_invalid_delay(self, defaults):
        with pytest.raises(ValidationError):
            JobOptions.parse({"delay": -10}, defaults)

    def test_options_must_be_mapping(self, defaults):
        with pytest.raises(ValidationError):
            JobOptions.parse([("attempts", 2)], defaults)


class TestJob:
    def test_defaults(self):
        job = Job(lane=Lane.SEND_EMAIL, payload={"to": "a@example.com"}, created_at=100.0)

        assert job.status == JobStatus.PENDING
        assert job.attempts_made == 0
        assert job.max_attempts == 3
        assert job.run_at == 100.0
        assert job.attempts_remaining == 3
        assert job.job_id

    def test_unique_ids(self):
        assert Job(lane=Lane.ANALYTICS).job_id != Job(lane=Lane.ANALYTICS).job_id

    def test_storage_round_trip_preserves_state(self):
        job = Job(
            lane=Lane.NOTIFY_ADMIN,
            payload={"course": "Math", "rating": 4, "student": "s@example.com"},
            attempts_made=2,
            backoff=BackoffPolicy(BackoffType.FIXED, 3000),
            progress={"delivered": ["admin1@example.com"]},
            error="SMTP connection reset",
        )

        restored = Job.from_dict(job.to_dict())

        assert restored == job

    def test_public_dict_hides_lock(self):
        job = Job(lane=Lane.SEND_EMAIL, locked_by="w1", lease_expires_at=5.0, created_at=0.0)
        public = job.to_public_dict()

        assert "locked_by" not in public
        assert "lease_expires_at" not in public
        assert public["created_at"].startswith("1970-01-01T00:00:00")
        assert public["lane"] == "send-email"
