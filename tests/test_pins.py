import pytest

from pinguard.service.pins import (
    COMMON_PINS,
    PinHasher,
    generate_reset_code,
    hash_reset_code,
    is_common_pin,
    is_valid_pin_format,
    mask_email,
    reset_code_matches,
)


@pytest.mark.parametrize("pin", ["0000", "1234", "5678", "9071"])
def test_four_ascii_digits_are_valid(pin):
    assert is_valid_pin_format(pin)


@pytest.mark.parametrize(
    "pin",
    ["", "123", "12345", "12a4", " 123", "12 4", "１２３４", "١٢٣٤", None, 1234],
)
def test_malformed_pins_are_rejected(pin):
    assert not is_valid_pin_format(pin)


def test_common_pin_denylist():
    for digit in "0123456789":
        assert is_common_pin(digit * 4)
    assert is_common_pin("1234")
    assert is_common_pin("2580")
    assert not is_common_pin("5678")
    assert len(COMMON_PINS) == 12


def test_reset_code_generation():
    code = generate_reset_code()
    assert len(code) == 6
    assert code.isdigit()
    assert len(generate_reset_code(8)) == 8


def test_reset_code_hash_comparison():
    digest = hash_reset_code("123456")
    assert digest != "123456"
    assert reset_code_matches("123456", digest)
    assert not reset_code_matches("123457", digest)


def test_mask_email():
    assert mask_email("alice@example.com") == "ali***@example.com"
    assert mask_email("al@example.com") == "al***@example.com"
    assert mask_email("not-an-email") == "***"


def test_pin_hasher_roundtrip():
    hasher = PinHasher()
    digest = hasher.hash("5678")
    assert digest.startswith("$argon2id$")
    assert hasher.verify(digest, "5678")
    assert not hasher.verify(digest, "5679")


def test_pin_hasher_rejects_garbage_hash():
    assert PinHasher().verify("not-a-hash", "5678") is False
