from __future__ import annotations

from datetime import timedelta

from sqlalchemy import create_engine, delete, func, select
from sqlalchemy.orm import Session

from guestpass import database
from guestpass.models import Base, Registration, RegistrationToken
from guestpass.repositories import RegistrationFields, SqlRegistrationStore, SqlTokenStore
from guestpass.tokens import generate_token


def _registration_with_token(session, clock):
    registration = SqlRegistrationStore(session, clock=clock).create(
        RegistrationFields(
            name="Robin",
            email="robin@example.com",
            stay="FRI_SAT",
            adults_count=1,
            children_count=0,
        )
    )
    SqlTokenStore(session, clock=clock).insert(
        registration.id, generate_token().hash, clock() + timedelta(days=1)
    )
    session.commit()
    return registration


def test_shared_engine_enforces_foreign_keys():
    assert database.foreign_keys_enabled(database.engine)


def test_deleting_registration_cascades_to_tokens(session, clock):
    registration = _registration_with_token(session, clock)

    session.execute(delete(Registration).where(Registration.id == registration.id))
    session.commit()

    remaining = session.scalar(
        select(func.count()).select_from(RegistrationToken)
    )
    assert remaining == 0


def test_build_engine_enables_foreign_keys_on_file_database(tmp_path, clock):
    engine = database.build_engine(f"sqlite:///{tmp_path / 'fk.sqlite'}")
    try:
        assert database.foreign_keys_enabled(engine)
        Base.metadata.create_all(bind=engine)
        with Session(engine, expire_on_commit=False) as session:
            registration = _registration_with_token(session, clock)
            session.execute(
                delete(Registration).where(Registration.id == registration.id)
            )
            session.commit()
            assert session.scalar(
                select(func.count()).select_from(RegistrationToken)
            ) == 0
    finally:
        engine.dispose()


def test_plain_engine_without_hook_leaves_foreign_keys_off(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'plain.sqlite'}", future=True)
    try:
        assert not database.foreign_keys_enabled(engine)
        database.enable_sqlite_foreign_keys(engine)
        engine.dispose()
        assert database.foreign_keys_enabled(engine)
    finally:
        engine.dispose()


def test_get_session_rolls_back_on_error(clock):
    try:
        with database.get_session() as session:
            _registration_with_token(session, clock)
            session.add(
                Registration(
                    name="Half",
                    email="half@example.com",
                    stay="FRI_SAT",
                    adults_count=1,
                    children_count=0,
                )
            )
            session.flush()
            raise RuntimeError("boom")
    except RuntimeError:
        pass

    with database.get_session() as session:
        emails = set(session.scalars(select(Registration.email)))
    assert emails == {"robin@example.com"}
