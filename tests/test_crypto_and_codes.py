"""Unit tests for the MFA secret cipher, TOTP engine and backup codes."""

import base64

import pytest

from homeops.service import backup_codes, totp
from homeops.service.crypto import InvalidCiphertext, InvalidKey, MfaCipher

HEX_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode().rstrip("=")


class TestMfaCipher:
    def test_ciphertext_is_iv_tag_body_hex(self):
        cipher = MfaCipher.from_settings(HEX_KEY, "k1", production=False)
        sealed = cipher.encrypt("JBSWY3DPEHPK3PXP")
        iv, tag, body = sealed.split(":")
        assert len(bytes.fromhex(iv)) == 12
        assert len(bytes.fromhex(tag)) == 16
        assert "JBSWY3DPEHPK3PXP" not in sealed
        assert cipher.decrypt(sealed) == "JBSWY3DPEHPK3PXP"

    def test_fresh_iv_each_time(self):
        cipher = MfaCipher.from_settings(HEX_KEY, "k1", production=False)
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_base64_key_material_is_accepted(self):
        key_b64 = base64.b64encode(bytes.fromhex(HEX_KEY)).decode()
        a = MfaCipher.from_settings(HEX_KEY, "k1", production=False)
        b = MfaCipher.from_settings(key_b64, "k1", production=False)
        assert b.decrypt(a.encrypt("secret")) == "secret"

    def test_tampered_ciphertext_fails(self):
        cipher = MfaCipher.from_settings(HEX_KEY, "k1", production=False)
        iv, tag, body = cipher.encrypt("secret").split(":")
        flipped = format(int(body[:2], 16) ^ 0x01, "02x") + body[2:]
        with pytest.raises(InvalidCiphertext):
            cipher.decrypt(f"{iv}:{tag}:{flipped}")

    def test_malformed_ciphertext_fails(self):
        cipher = MfaCipher.from_settings(HEX_KEY, "k1", production=False)
        with pytest.raises(InvalidCiphertext):
            cipher.decrypt("not-a-ciphertext")

    def test_short_key_is_rejected(self):
        with pytest.raises(InvalidKey):
            MfaCipher.from_settings("abcd", "k1", production=False)

    def test_missing_key_in_production_is_rejected(self):
        with pytest.raises(InvalidKey):
            MfaCipher.from_settings(None, "k1", production=True)

    def test_missing_key_outside_production_uses_dev_key(self):
        cipher = MfaCipher.from_settings(None, "k1", production=False)
        assert cipher.key_id == "dev"
        assert cipher.decrypt(cipher.encrypt("x")) == "x"


class TestTotp:
    def test_rfc6238_vectors(self):
        assert totp.generate_code(RFC_SECRET, 59) == "287082"
        assert totp.generate_code(RFC_SECRET, 1111111109) == "081804"

    def test_verify_accepts_one_step_of_drift(self):
        now = 1_700_000_000
        previous = totp.generate_code(RFC_SECRET, now - 30)
        assert totp.verify(RFC_SECRET, previous, timestamp=now)
        too_old = totp.generate_code(RFC_SECRET, now - 90)
        assert not totp.verify(RFC_SECRET, too_old, timestamp=now)

    def test_verify_rejects_non_digit_input(self):
        assert not totp.verify(RFC_SECRET, "abcdef")
        assert not totp.verify(RFC_SECRET, "12345")

    def test_generated_secret_is_160_bits(self):
        secret = totp.generate_secret()
        assert len(base64.b32decode(secret + "=" * (-len(secret) % 8))) == 20

    def test_otpauth_uri(self):
        uri = totp.otpauth_uri("HomeOps", "ada@x.io", "ABC")
        assert uri.startswith("otpauth://totp/HomeOps:ada@x.io?")
        assert "secret=ABC" in uri
        assert "issuer=HomeOps" in uri
        assert "digits=6" in uri and "period=30" in uri

    def test_qr_data_url(self):
        url = totp.qr_data_url("otpauth://totp/HomeOps:a@b.c?secret=ABC")
        assert url is not None
        assert url.startswith("data:image/svg+xml;base64,")


class TestBackupCodes:
    def test_generates_distinct_codes_from_alphabet(self):
        codes = backup_codes.generate()
        assert len(codes) == 8
        assert len(set(codes)) == 8
        for code in codes:
            assert len(code) == 8
            assert set(code) <= set(backup_codes.ALPHABET)

    def test_hash_ignores_case_and_whitespace(self):
        assert backup_codes.hash_code("abcd efgh") == backup_codes.hash_code("ABCDEFGH")

    def test_looks_like_backup_code(self):
        assert backup_codes.looks_like_backup_code("ABCDEFGH")
        assert not backup_codes.looks_like_backup_code("123456")
        assert not backup_codes.looks_like_backup_code("ABCDEFG0")
