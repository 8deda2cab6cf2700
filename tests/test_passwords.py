from argon2 import PasswordHasher as Argon2Hasher

from shopauth.logging import _redact_pii, sanitize_error_message
from shopauth.service.passwords import PasswordHasher


class TestPasswordHasher:
    def test_hash_is_salted_and_verifies(self, hasher):
        first = hasher.hash("correct horse")
        second = hasher.hash("correct horse")
        assert first != second
        assert first.startswith("$argon2id$")
        assert hasher.verify(first, "correct horse")
        assert not hasher.verify(first, "wrong horse")

    def test_garbage_hash_never_verifies(self, hasher):
        assert hasher.verify("not-a-hash", "anything") is False
        assert hasher.needs_rehash("not-a-hash") is True

    def test_weaker_parameters_need_rehash(self, hasher):
        weak = PasswordHasher(Argon2Hasher(time_cost=1, memory_cost=8, parallelism=1, hash_len=16))
        assert hasher.needs_rehash(weak.hash("secret")) is True


class TestLogRedaction:
    def test_credentials_and_addresses_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "shopper@example.com",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
                "account_id": "acc-1",
            },
        )
        assert event["email"] == "sh***om"
        assert event["refresh_token"].startswith("ey***")
        assert event["account_id"] == "acc-1"

    def test_digest_fields_left_alone(self):
        digest = "a" * 64
        event = _redact_pii(None, "info", {"email_hash": digest})
        assert event["email_hash"] == digest


class TestSanitizeErrorMessage:
    def test_connection_strings_removed(self):
        message = sanitize_error_message("cannot reach postgresql://shop:pw@db:5432/shop")
        assert "pw@db" not in message

    def test_empty_message_replaced(self):
        assert sanitize_error_message("") == "An error occurred"

    def test_long_messages_truncated(self):
        assert len(sanitize_error_message("x" * 2000)) == 500
