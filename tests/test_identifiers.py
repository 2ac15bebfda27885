import pytest

from nhs_interop.exceptions import InvalidIdentifier
from nhs_interop.services import identifiers


def test_validate_accepts_known_good_number():
    assert identifiers.validate("9434765919") == "9434765919"


def test_validate_strips_spaces_and_hyphens():
    assert identifiers.validate("943 476 5919") == "9434765919"
    assert identifiers.validate("943-476-5919") == "9434765919"


def test_validate_rejects_checksum_mismatch():
    with pytest.raises(InvalidIdentifier, match="checksum"):
        identifiers.validate("9434765918")


@pytest.mark.parametrize("value", ["", "943476591", "94347659190", "94347659l9", "abcdefghij"])
def test_validate_rejects_wrong_shape(value):
    with pytest.raises(InvalidIdentifier, match="ten digits"):
        identifiers.validate(value)


def test_validate_rejects_non_string():
    with pytest.raises(InvalidIdentifier):
        identifiers.validate(9434765919)


def test_check_digit_maps_eleven_to_zero():
    assert identifiers.check_digit("000000000") == 0
    assert identifiers.is_valid("0000000000")


def test_check_digit_ten_means_never_valid():
    # 6 * 2 = 12, remainder 1, so 11 - 1 = 10.
    assert identifiers.check_digit("000000006") is None
    for last in range(10):
        assert not identifiers.is_valid(f"000000006{last}")


def test_check_digit_requires_nine_digits():
    with pytest.raises(ValueError):
        identifiers.check_digit("12345")


def test_mask_keeps_only_prefix():
    assert identifiers.mask("9434765919") == "943*******"
    assert identifiers.mask(None) == "***"


def test_invalid_identifier_context_never_carries_full_number():
    with pytest.raises(InvalidIdentifier) as exc_info:
        identifiers.validate("9434765918")

    context = exc_info.value.context()
    assert "9434765918" not in str(context)
    assert context["resource_id"] == "943*******"


@pytest.mark.parametrize("value", ["٩٤٣٤٧٦٥٩١٩", "９４３４７６５９１９"])
def test_validate_rejects_non_ascii_digits(value):
    with pytest.raises(InvalidIdentifier, match="ten digits"):
        identifiers.validate(value)


def test_check_digit_rejects_non_ascii_digits():
    with pytest.raises(ValueError):
        identifiers.check_digit("٩٤٣٤٧٦٥٩١")


def _single_digit_mutations(number):
    for position, original in enumerate(number):
        for digit in "0123456789":
            if digit != original:
                yield number[:position] + digit + number[position + 1 :]


@pytest.mark.parametrize("mutated", list(_single_digit_mutations("9434765919")))
def test_any_single_digit_change_is_rejected(mutated):
    assert not identifiers.is_valid(mutated)


@pytest.mark.parametrize("prefix", [f"{seed * 7919 % 1_000_000_000:09d}" for seed in range(200)])
def test_generated_numbers_with_check_digit_are_accepted(prefix):
    expected = identifiers.check_digit(prefix)
    if expected is None:
        assert not any(identifiers.is_valid(f"{prefix}{last}") for last in range(10))
    else:
        assert identifiers.validate(f"{prefix}{expected}") == f"{prefix}{expected}"
