"""
Market Intel - Database Model Tests
JSON column helpers, URL handling, constraints and cascades.
"""
import pytest
import sys
import os

from sqlalchemy.exc import IntegrityError

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

pytestmark = pytest.mark.timeout(10)


class TestJsonColumns:

    def test_dump_none_stays_none(self):
        from database import dump_json
        assert dump_json(None) is None

    def test_dump_stringifies_unknown_types(self):
        from datetime import date
        from database import dump_json
        assert dump_json({"day": date(2026, 10, 19)}) == '{"day": "2026-10-19"}'

    @pytest.mark.parametrize("raw", [None, "", "{not json"])
    def test_load_falls_back_to_default(self, raw):
        from database import load_json
        assert load_json(raw, []) == []

    def test_load(self):
        from database import load_json
        assert load_json('["Acme"]') == ["Acme"]


class TestDatabaseUrl:

    def test_heroku_scheme_rewritten(self, monkeypatch):
        from database import _get_database_url
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@db:5432/intel")
        assert _get_database_url() == "postgresql://u:p@db:5432/intel"

    def test_sqlite_default(self, monkeypatch):
        from database import _get_database_url
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert _get_database_url() == "sqlite:///./market_intel.db"


class TestConstraints:

    def test_email_unique(self, users, db_session):
        from database import User
        db_session.add(User(email="user@example.com", hashed_password="x", role="user"))
        with pytest.raises(IntegrityError):
            db_session.commit()

    def test_ticket_messages_deleted_with_ticket(self, users, db_session):
        from database import SupportTicket, SupportTicketMessage
        ticket = SupportTicket(user_id=users["user"]["id"], title="t", description="d", status="open")
        ticket.messages.append(SupportTicketMessage(user_id=users["user"]["id"], message="hello"))
        db_session.add(ticket)
        db_session.commit()
        assert db_session.query(SupportTicketMessage).count() == 1

        db_session.delete(ticket)
        db_session.commit()
        assert db_session.query(SupportTicketMessage).count() == 0

    def test_analysis_defaults(self, users, db_session):
        from database import CompetitorAnalysis
        row = CompetitorAnalysis(user_id=users["user"]["id"], name="a", competitors='["Acme"]')
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        assert row.status == "pending"
        assert row.progress_percentage == 0
        assert row.actual_cost == 0.0
