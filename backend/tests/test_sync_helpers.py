"""
Tests for the pure insight and ad parsing helpers used by the sync.
"""

import uuid
from datetime import date

import pytest

from adpulse.services.sync_service import (
    build_metric_row,
    derive_frequency,
    detect_format,
    extract_action_value,
    extract_conversions,
    extract_landing_page_url,
)

PURCHASE = "offsite_conversion.fb_pixel_purchase"


def test_exact_action_type_wins():
    actions = [
        {"action_type": "omni_purchase", "value": "9"},
        {"action_type": PURCHASE, "value": "4"},
    ]
    assert extract_action_value(actions, PURCHASE) == "4"


def test_falls_back_to_last_segment_substring():
    actions = [
        {"action_type": "link_click", "value": "50"},
        {"action_type": "omni_purchase", "value": "3"},
    ]
    assert extract_action_value(actions, PURCHASE) == "3"
    assert extract_conversions(actions, PURCHASE) == 3


def test_plain_purchase_action_counts_for_pixel_purchase():
    actions = [{"action_type": "purchase", "value": "5"}]
    assert extract_action_value(actions, PURCHASE) == "5"
    assert extract_conversions(actions, PURCHASE) == 5


@pytest.mark.parametrize("actions", [None, [], [{"action_type": "link_click", "value": "12"}]])
def test_no_matching_action(actions):
    assert extract_action_value(actions, PURCHASE) is None
    assert extract_conversions(actions, PURCHASE) == 0


def test_lead_event_matches_lead_actions():
    actions = [{"action_type": "onsite_conversion.lead_grouped", "value": "7"}]
    assert extract_conversions(actions, "lead") == 7


def test_frequency_prefers_meta_value():
    assert derive_frequency("2.5", "1000", "100") == 2.5


def test_frequency_derived_from_reach():
    assert derive_frequency(None, "1500", "1000") == 1.5


@pytest.mark.parametrize("reach", [None, "0", ""])
def test_frequency_absent_without_reach(reach):
    assert derive_frequency(None, "1500", reach) is None


@pytest.mark.parametrize(
    "object_type, expected",
    [
        ("VIDEO", "video"),
        ("PHOTO", "image"),
        ("SHARE_LINK", "image"),
        ("CAROUSEL", "carousel"),
        ("STATUS", "unknown"),
        (None, "unknown"),
    ],
)
def test_detect_format(object_type, expected):
    assert detect_format(object_type) == expected


def test_landing_url_prefers_object_url():
    ad = {"creative": {"object_url": "https://shop.example.com/p/1", "link_url": "https://other.example.com"}}
    assert extract_landing_page_url(ad) == "https://shop.example.com/p/1"


def test_landing_url_from_story_spec():
    ad = {
        "creative": {
            "object_url": "not a url",
            "object_story_spec": {
                "video_data": {"call_to_action": {"value": {"link": "https://lp.example.com/video"}}}
            },
        }
    }
    assert extract_landing_page_url(ad) == "https://lp.example.com/video"


@pytest.mark.parametrize("ad", [{}, {"creative": {}}, {"creative": {"link_url": "ftp://files.example.com"}}])
def test_no_landing_url(ad):
    assert extract_landing_page_url(ad) is None


def test_build_metric_row():
    account_id = uuid.uuid4()
    insight = {
        "ad_id": "ad_1",
        "date_start": "2024-06-01",
        "impressions": "2000",
        "clicks": "40",
        "spend": "55.30",
        "ctr": "2.0",
        "reach": "1000",
        "actions": [{"action_type": PURCHASE, "value": "2"}],
        "action_values": [{"action_type": PURCHASE, "value": "199.8"}],
    }
    row = build_metric_row(account_id, insight, PURCHASE)

    assert row["account_id"] == account_id
    assert row["date"] == date(2024, 6, 1)
    assert row["impressions"] == 2000
    assert row["clicks"] == 40
    assert row["spend"] == 55.30
    assert row["conversions"] == 2
    assert row["conversion_value"] == 199.8
    assert row["frequency"] == 2.0
    assert row["cpm"] is None
