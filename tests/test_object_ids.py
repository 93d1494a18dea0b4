import pytest

from splint_factory.geometry.object_ids import (
    CROCKFORD_ALPHABET,
    MAX_RETRIES,
    ObjectIdExhaustedError,
    debug_object_id,
    encode_object_id,
    generate_object_id,
    is_valid_object_id,
    normalize_object_id,
)


def test_alphabet_excludes_ambiguous_letters():
    assert len(CROCKFORD_ALPHABET) == 32
    for letter in "ILOU":
        assert letter not in CROCKFORD_ALPHABET


def test_encode_pads_to_four_characters():
    assert encode_object_id(0) == "0000"
    assert encode_object_id(31) == "000Z"
    assert encode_object_id(2**20 - 1) == "ZZZZ"


def test_encode_rejects_negative_values():
    with pytest.raises(ValueError):
        encode_object_id(-1)


def test_normalize_object_id():
    assert normalize_object_id(" a1bo ") == "A1B0"
    assert normalize_object_id("iLlo") == "1110"
    assert normalize_object_id("00o1") == "0001"


def test_normalize_rejects_characters_outside_alphabet():
    with pytest.raises(ValueError):
        normalize_object_id("00U0")


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("A1B2", True),
        ("a1b2c3", True),
        ("ABC", False),
        ("AB-2", False),
        ("", False),
        (1234, False),
        (None, False),
    ],
)
def test_is_valid_object_id(value, expected):
    assert is_valid_object_id(value) is expected


def test_generate_object_id_skips_existing_ids():
    seen = []

    def exists(candidate):
        seen.append(candidate)
        return len(seen) < 3

    object_id = generate_object_id(exists)

    assert len(seen) == 3
    assert object_id == seen[-1]
    assert len(object_id) == 4
    assert all(char in CROCKFORD_ALPHABET for char in object_id)


def test_generate_object_id_gives_up_after_retries():
    calls = []

    def exists(candidate):
        calls.append(candidate)
        return True

    with pytest.raises(ObjectIdExhaustedError):
        generate_object_id(exists)
    assert len(calls) == MAX_RETRIES


def test_debug_object_id_uses_milliseconds():
    assert debug_object_id(1718000000.5) == "debug-1718000000500"
    assert debug_object_id().startswith("debug-")
