from __future__ import annotations

import re
from datetime import timedelta

import pytest

from conftest import token_from_url, valid_registration
from guestpass.errors import DeliveryError, NotFoundError, ValidationError
from guestpass.models import STATUS_CANCELLED, Registration, RegistrationToken
from guestpass.notifier import DeliveryResult, EmailBackend, Notifier
from guestpass.tokens import generate_token

_link = re.compile(r"http://guest\.test/manage/(\S+)")


class FailingBackend(EmailBackend):
    def send(self, message):
        return DeliveryResult(success=False, error="mailbox unavailable")


def _last_token(outbox) -> str:
    return _link.search(outbox.messages[-1].text).group(1)


def _register(service, outbox, **overrides):
    result = service.register_guest(valid_registration(**overrides))
    return result.registration_id, _last_token(outbox)


def test_register_guest_emails_working_manage_link(service, outbox):
    registration_id, token = _register(service, outbox)

    assert len(outbox.messages) == 1
    message = outbox.messages[0]
    assert message.to == "jamie@example.com"
    assert message.subject == "Your registration for Lake Weekend"
    registration = service.get_registration_by_token(token)
    assert registration.id == registration_id
    assert registration.adults_count == 2


def test_register_guest_normalizes_email(service, outbox):
    _, token = _register(service, outbox, email="  Jamie@Example.COM ")
    assert service.get_registration_by_token(token).email == "jamie@example.com"


def test_register_guest_rejects_invalid_fields(service, outbox, session):
    with pytest.raises(ValidationError) as excinfo:
        service.register_guest(valid_registration(adults_count=0, stay="MON_TUE"))

    assert set(excinfo.value.fields) == {"adults_count", "stay"}
    assert outbox.messages == []
    assert session.query(Registration).count() == 0


def test_register_guest_raises_when_email_fails(service, session):
    service.notifier = Notifier(FailingBackend())

    with pytest.raises(DeliveryError):
        service.register_guest(valid_registration())

    # The registration is committed; the guest can recover with a resend.
    assert session.query(Registration).count() == 1


def test_update_rotates_token(service, outbox):
    registration_id, old_token = _register(service, outbox)

    result = service.update_registration_by_token(
        old_token, valid_registration(adults_count=3)
    )

    new_token = token_from_url(result.new_manage_url)
    assert new_token != old_token
    assert _last_token(outbox) == new_token
    with pytest.raises(NotFoundError):
        service.get_registration_by_token(old_token)
    registration = service.get_registration_by_token(new_token)
    assert registration.id == registration_id
    assert registration.adults_count == 3


def test_update_sends_new_link_to_updated_email(service, outbox):
    _, token = _register(service, outbox)
    service.update_registration_by_token(
        token, valid_registration(email="new.address@example.com")
    )
    assert outbox.messages[-1].to == "new.address@example.com"


def test_update_with_invalid_fields_keeps_token_valid(service, outbox):
    _, token = _register(service, outbox)

    with pytest.raises(ValidationError):
        service.update_registration_by_token(token, valid_registration(name=""))

    assert service.get_registration_by_token(token).name == "Jamie Rivera"
    assert len(outbox.messages) == 1


def test_update_checks_token_before_fields(service):
    with pytest.raises(NotFoundError):
        service.update_registration_by_token("bogus", {"adults_count": 99})


def test_update_reports_delivery_failure_after_commit(service, outbox):
    _, token = _register(service, outbox)
    service.notifier = Notifier(FailingBackend())

    with pytest.raises(DeliveryError):
        service.update_registration_by_token(token, valid_registration(adults_count=4))

    with pytest.raises(NotFoundError):
        service.get_registration_by_token(token)


def test_cancel_revokes_every_active_token(service, outbox, session, clock):
    registration_id, token = _register(service, outbox)
    spare = generate_token()
    service.tokens.insert(registration_id, spare.hash, clock() + timedelta(days=90))
    session.commit()

    service.cancel_registration_by_token(token)

    registration = session.get(Registration, registration_id)
    assert registration.status == STATUS_CANCELLED
    active = (
        session.query(RegistrationToken)
        .filter_by(registration_id=registration_id, is_revoked=False)
        .count()
    )
    assert active == 0
    with pytest.raises(NotFoundError):
        service.get_registration_by_token(spare.raw)


def test_second_cancel_is_not_found(service, outbox):
    _, token = _register(service, outbox)
    service.cancel_registration_by_token(token)

    with pytest.raises(NotFoundError):
        service.cancel_registration_by_token(token)


def test_expired_token_cannot_view(service, outbox, clock):
    _, token = _register(service, outbox)
    clock.advance(timedelta(days=90))
    with pytest.raises(NotFoundError):
        service.get_registration_by_token(token)


def test_resend_replaces_existing_links(service, outbox, sleep):
    _, old_token = _register(service, outbox)

    result = service.resend_manage_link("JAMIE@example.com")

    assert result.success
    assert len(outbox.messages) == 2
    new_token = _last_token(outbox)
    assert new_token != old_token
    with pytest.raises(NotFoundError):
        service.get_registration_by_token(old_token)
    assert service.get_registration_by_token(new_token).email == "jamie@example.com"
    assert sleep.calls == [pytest.approx(0.15)]


def test_resend_unknown_email_sends_nothing(service, outbox, sleep):
    result = service.resend_manage_link("nobody@example.com")

    assert result.success
    assert outbox.messages == []
    assert sleep.calls == [pytest.approx(0.15)]


def test_resend_cancelled_registration_sends_nothing(service, outbox, sleep):
    _, token = _register(service, outbox)
    service.cancel_registration_by_token(token)
    outbox.clear()

    result = service.resend_manage_link("jamie@example.com")

    assert result.success
    assert outbox.messages == []
    assert sleep.calls == [pytest.approx(0.15)]


def test_resend_hides_internal_failures(service, sleep, monkeypatch):
    def boom(email):
        raise RuntimeError("database is on fire")

    monkeypatch.setattr(service.registrations, "find_by_email", boom)

    result = service.resend_manage_link("jamie@example.com")

    assert result.success
    assert sleep.calls == [pytest.approx(0.15)]


def test_resend_does_not_sleep_past_minimum(service, sleep):
    ticks = iter([0.0, 0.5])
    service._monotonic = lambda: next(ticks)

    service.resend_manage_link("nobody@example.com")

    assert sleep.calls == []


def _raise(*args, **kwargs):
    raise RuntimeError("storage unavailable")


def test_update_rolls_back_when_new_token_insert_fails(
    service, outbox, session, monkeypatch
):
    _, token = _register(service, outbox)
    monkeypatch.setattr(service.tokens, "insert", _raise)

    with pytest.raises(RuntimeError):
        service.update_registration_by_token(token, valid_registration(adults_count=5))

    registration = service.get_registration_by_token(token)
    assert registration.adults_count == 2
    assert session.query(RegistrationToken).count() == 1
    assert len(outbox.messages) == 1


def test_update_rolls_back_when_old_token_revoke_fails(
    service, outbox, session, monkeypatch
):
    _, token = _register(service, outbox)
    monkeypatch.setattr(service.tokens, "revoke", _raise)

    with pytest.raises(RuntimeError):
        service.update_registration_by_token(
            token, valid_registration(name="Someone Else")
        )

    # The replacement token inserted before the failure is gone too.
    assert session.query(RegistrationToken).count() == 1
    assert service.get_registration_by_token(token).name == "Jamie Rivera"
    assert len(outbox.messages) == 1


def test_update_rolls_back_when_commit_fails(service, outbox, session, monkeypatch):
    _, token = _register(service, outbox)
    monkeypatch.setattr(session, "commit", _raise)

    with pytest.raises(RuntimeError):
        service.update_registration_by_token(token, valid_registration(adults_count=4))

    monkeypatch.undo()
    registration = service.get_registration_by_token(token)
    assert registration.adults_count == 2
    tokens = session.query(RegistrationToken).all()
    assert len(tokens) == 1
    assert not tokens[0].is_revoked
    assert len(outbox.messages) == 1


def test_register_commit_failure_persists_nothing(
    service, outbox, session, monkeypatch
):
    monkeypatch.setattr(session, "commit", _raise)

    with pytest.raises(RuntimeError):
        service.register_guest(valid_registration())

    monkeypatch.undo()
    assert session.query(Registration).count() == 0
    assert session.query(RegistrationToken).count() == 0
    assert outbox.messages == []


def test_resend_failure_after_revoke_keeps_old_link(
    service, outbox, sleep, monkeypatch
):
    _, token = _register(service, outbox)
    monkeypatch.setattr(service.tokens, "insert", _raise)

    result = service.resend_manage_link("jamie@example.com")

    assert result.success
    assert sleep.calls == [pytest.approx(0.15)]
    assert len(outbox.messages) == 1
    assert service.get_registration_by_token(token).email == "jamie@example.com"
