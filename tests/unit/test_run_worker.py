"""
Test suite for run_worker.py startup checks
"""

from run_worker import standalone_warnings


class TestStandaloneWarnings:
    def test_shared_backends_are_quiet(self, settings):
        settings.JOB_STORE_BACKEND = "redis"
        settings.NOTIFICATION_BACKEND = "redis"

        assert standalone_warnings(settings) == []

    def test_local_notifications_flagged(self, settings):
        settings.JOB_STORE_BACKEND = "redis"

        warnings = standalone_warnings(settings)

        assert len(warnings) == 1
        assert "notify-student" in warnings[0]

    def test_memory_store_flagged(self, settings):
        settings.NOTIFICATION_BACKEND = "redis"

        warnings = standalone_warnings(settings)

        assert len(warnings) == 1
        assert "non-redis store" in warnings[0]
