import pytest

from app.domain.transfers.service import compute_fee_split, payout_idempotency_key


def test_fee_is_rounded_down_and_expert_keeps_remainder():
    split = compute_fee_split(999, 0.15)

    assert split.platform_fee == 149
    assert split.expert_amount == 850


def test_whole_amount_split():
    split = compute_fee_split(10000, 0.15)

    assert split.platform_fee == 1500
    assert split.expert_amount == 8500


@pytest.mark.parametrize("gross", [None, 0, -500])
def test_missing_or_non_positive_amount_splits_to_zero(gross):
    split = compute_fee_split(gross, 0.15)

    assert split.platform_fee == 0
    assert split.expert_amount == 0


def test_zero_rate_pays_everything_to_expert():
    split = compute_fee_split(4321, 0.0)

    assert split.platform_fee == 0
    assert split.expert_amount == 4321


@pytest.mark.parametrize("gross", [1, 7, 333, 1001, 123457])
def test_split_always_sums_to_gross(gross):
    split = compute_fee_split(gross, 0.15)

    assert split.platform_fee + split.expert_amount == gross
    assert split.platform_fee >= 0


def test_idempotency_key_is_stable_per_transfer():
    assert payout_idempotency_key("abc") == "transfer-abc"
    assert payout_idempotency_key("abc") == payout_idempotency_key("abc")


def test_reference_booking_split():
    split = compute_fee_split(5000, 0.15)

    assert (split.platform_fee, split.expert_amount) == (750, 4250)
