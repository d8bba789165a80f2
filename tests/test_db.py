"""
Tests for engine configuration and session helpers.
"""

import pytest

from billing_relay.db import check_connection, db_session, dispose_engine, normalize_database_url
from billing_relay.models import UserQuotaRecord
from billing_relay.store import ensure_record, get_record


class TestNormalizeDatabaseUrl:

    def test_postgres_scheme_rewritten(self):
        url = normalize_database_url('postgres://relay:pw@db.internal:5432/relay')
        assert url.drivername == 'postgresql'

    def test_separate_password_applied(self):
        url = normalize_database_url('postgresql://relay@db.internal:5432/relay', password='s3cret')
        assert url.password == 's3cret'
        assert url.host == 'db.internal'


class TestSessions:

    def test_db_session_commits(self, db):
        with db_session() as session:
            ensure_record(session, 'u1')

        assert get_record(db, 'u1') is not None

    def test_db_session_rolls_back_on_error(self, db):
        with pytest.raises(RuntimeError):
            with db_session() as session:
                session.add(UserQuotaRecord(user_id='u2'))
                session.flush()
                raise RuntimeError('boom')

        assert get_record(db, 'u2') is None

    def test_check_connection(self, db):
        assert check_connection() is True

    def test_unconfigured_engine(self):
        dispose_engine()
        with pytest.raises(RuntimeError):
            with db_session():
                pass
