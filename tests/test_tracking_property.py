#!/usr/bin/env python3
"""
Property-based tests for price tracking

*For any* sequence of observed (price, quantity) pairs, the product history
grows by exactly one entry per observation that differs from the stored state,
stays ordered by date, and always ends with the current price and quantity.

*For any* volume and cached host hint, the candidate host list is a
permutation of all shard hosts with the hint first.
"""
import sys
import os
from decimal import Decimal
from unittest.mock import MagicMock

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from hypothesis import given, strategies as st, settings

from core.errors import ValidationError
from core.models import ResolvedProduct, TrackedProduct
from core.tracker import INTERVAL_CRON, CheckReport, PriceTracker, interval_to_cron
from core.config import is_valid_cron
from scrapers.wildberries.resolver import WildberriesResolver


# Strategies for generating test data
price_strategy = st.decimals(min_value=0, max_value=100000, places=2, allow_nan=False, allow_infinity=False)
quantity_strategy = st.integers(min_value=0, max_value=500)
observation_strategy = st.tuples(price_strategy, quantity_strategy)
host_strategy = st.sampled_from(list(WildberriesResolver.host_tokens()))


def make_resolved(price: Decimal, quantity: int) -> ResolvedProduct:
    return ResolvedProduct("1234567", "Widget", "Acme", price, rating=4.5, quantity=quantity)


@settings(max_examples=100)
@given(
    first=observation_strategy,
    observations=st.lists(observation_strategy, max_size=20),
    unconditional=st.booleans(),
)
def test_history_records_only_changes(first, observations, unconditional):
    product = TrackedProduct.from_resolved(make_resolved(*first), timestamp="2024-01-01 00:00:00")
    expected_changes = 0
    state = first

    for price, quantity in observations:
        report = CheckReport()
        changed = PriceTracker._apply_check("1234567", product, make_resolved(price, quantity), unconditional, report)

        assert changed == ((price, quantity) != state)
        assert report.updated == (1 if changed else 0)
        if changed or unconditional:
            assert len(report.notices) == 1
        else:
            assert report.notices == []
        if changed:
            expected_changes += 1
            state = (price, quantity)

    assert len(product.history) == 1 + expected_changes
    dates = [entry.date for entry in product.history]
    assert dates == sorted(dates)
    assert product.history[-1].price == product.current_price == state[0]
    assert product.history[-1].quantity == product.quantity == state[1]


@settings(max_examples=100)
@given(vol=st.integers(min_value=0, max_value=99999), hint=st.one_of(st.none(), host_strategy))
def test_candidate_hosts_permutation(vol, hint):
    host_cache = MagicMock()
    host_cache.get.return_value = hint
    resolver = WildberriesResolver(host_cache)

    hosts = resolver.candidate_hosts(vol)
    assert sorted(hosts) == sorted(WildberriesResolver.host_tokens())
    assert len(hosts) == WildberriesResolver.HOST_COUNT
    if hint is not None:
        assert hosts[0] == hint


@settings(max_examples=100)
@given(article=st.integers(min_value=1000000, max_value=999999999))
def test_buckets(article):
    vol, part = WildberriesResolver.buckets(str(article))
    assert vol == article // 100000
    assert part == article // 1000
    assert part // 100 == vol


@settings(max_examples=100)
@given(minutes=st.integers(min_value=-1000, max_value=1000))
def test_interval_to_cron(minutes):
    if minutes in INTERVAL_CRON:
        assert is_valid_cron(interval_to_cron(minutes))
    else:
        with pytest.raises(ValidationError):
            interval_to_cron(minutes)
