"""Tests for CrawlSessionRepository."""

from catalog_crawler.errors import ErrorKind
from catalog_crawler.models import SessionStatus


class TestSessions:
    """Test cases for session lifecycle rows."""

    def test_start_session(self, sessions):
        session_id = sessions.start_session("testville", 100)

        session = sessions.find_session(session_id)

        assert session.status == SessionStatus.RUNNING
        assert session.max_items == 100
        assert session.started_at is not None
        assert session.completed_at is None

    def test_update_stats_ignores_unknown_counters(self, sessions):
        session_id = sessions.start_session("testville", 10)

        sessions.update_stats(session_id, {"items_found": 10, "items_new": 4, "bogus": 1})

        session = sessions.find_session(session_id)
        assert session.items_found == 10
        assert session.items_new == 4

    def test_complete_session(self, sessions):
        ok = sessions.start_session("testville", 10)
        failed = sessions.start_session("testville", 10)

        sessions.complete_session(ok, True)
        sessions.complete_session(failed, False, "boom")

        assert sessions.find_session(ok).status == SessionStatus.COMPLETED
        assert sessions.find_session(ok).completed_at is not None
        assert sessions.find_session(failed).status == SessionStatus.FAILED
        assert sessions.find_session(failed).error_message == "boom"

    def test_interrupt_session(self, sessions):
        session_id = sessions.start_session("testville", 10)

        sessions.interrupt_session(session_id, "interrupted")

        assert sessions.find_session(session_id).status == SessionStatus.INTERRUPTED

    def test_recent_sessions_newest_first(self, sessions):
        ids = [sessions.start_session("testville", 10) for _ in range(3)]

        recent = sessions.get_recent_sessions(limit=2)

        assert [s.id for s in recent] == [ids[2], ids[1]]

    def test_unknown_session(self, sessions):
        assert sessions.find_session(999) is None


class TestErrorLog:
    """Test cases for the error audit trail."""

    def test_log_and_read_errors(self, sessions):
        session_id = sessions.start_session("testville", 10)

        sessions.log_error(session_id, ErrorKind.HTTP_TERMINAL, "HTTP 404", url="https://catalog.test/1")
        sessions.log_error(session_id, "unknown", "boom", stack="Traceback ...")

        errors = sessions.get_session_errors(session_id)
        assert [e.error_type for e in errors] == ["unknown", "http_terminal"]
        assert errors[1].url == "https://catalog.test/1"
        assert errors[0].stack == "Traceback ..."

    def test_error_stats(self, sessions):
        session_id = sessions.start_session("testville", 10)
        other = sessions.start_session("testville", 10)
        for _ in range(2):
            sessions.log_error(session_id, ErrorKind.CHALLENGED, "challenged")
        sessions.log_error(session_id, ErrorKind.HTTP_TRANSIENT, "HTTP 503")
        sessions.log_error(other, ErrorKind.UNKNOWN, "other session")

        assert sessions.get_error_stats(session_id) == {"challenged": 2, "http_transient": 1}
