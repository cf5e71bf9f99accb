"""
Share Scope Filter Verification

Tests that:
1. Only active links deliver notifications
2. Fixed kinds consult their own flag, phase kinds the nested flags
3. Missing link prefs mean every flag is enabled
4. Unknown kinds are never delivered over a link
5. phase_only strips every date-bearing payload entry
6. phase_plus_dates passes the payload through unchanged
7. The input payload is never mutated

Run with: pytest tests/test_share_scope.py -v
"""

from datetime import date, datetime, timezone

import pytest

from app.models.partners import LinkNotificationPrefs, PartnerLink, PhaseTransitions
from app.services.share_scope import (
    FIXED_KINDS,
    PHASE_TRANSITION_KINDS,
    is_date_entry,
    permits,
    shape_payload,
)


def _link(status: str = "active", share_scope: str = "phase_only") -> PartnerLink:
    return PartnerLink(
        id="link-aaaa-1111",
        recipient_user="partner-bbbb-2222",
        subject_user="subject-cccc-3333",
        status=status,
        share_scope=share_scope,
    )


def _payload() -> dict:
    return {
        "phase": "ovulation",
        "cycle_day": 14,
        "date": "2026-01-15",
        "predicted_date": date(2026, 1, 20),
        "starts_at": datetime(2026, 1, 15, 13, 0, tzinfo=timezone.utc),
        "window_start": date(2026, 1, 14),
    }


# ===================================================================
# 1. permits()
# ===================================================================

class TestPermits:
    """Boolean gate on link status and per-kind flags."""

    @pytest.mark.parametrize("status", ["pending", "revoked"])
    def test_inactive_link_never_permits(self, status):
        prefs = LinkNotificationPrefs(link_id="link-aaaa-1111")
        for kind in FIXED_KINDS + PHASE_TRANSITION_KINDS:
            assert permits(_link(status=status), prefs, kind) is False

    def test_defaults_permit_every_known_kind(self):
        prefs = LinkNotificationPrefs(link_id="link-aaaa-1111")
        for kind in FIXED_KINDS + PHASE_TRANSITION_KINDS:
            assert permits(_link(), prefs, kind) is True

    def test_missing_prefs_use_defaults(self):
        assert permits(_link(), None, "critical_window") is True
        assert permits(_link(), None, "luteal") is True

    def test_fixed_kind_flag(self):
        prefs = LinkNotificationPrefs(link_id="link-aaaa-1111", t_minus_3=False)
        assert permits(_link(), prefs, "t_minus_3") is False
        assert permits(_link(), prefs, "on_start") is True

    def test_phase_transition_flag(self):
        prefs = LinkNotificationPrefs(
            link_id="link-aaaa-1111",
            phase_transitions=PhaseTransitions(pms=False),
        )
        assert permits(_link(), prefs, "pms") is False
        assert permits(_link(), prefs, "follicular") is True

    @pytest.mark.parametrize("kind", ["menstrual", "birthday", ""])
    def test_unknown_kind_is_not_delivered(self, kind):
        prefs = LinkNotificationPrefs(link_id="link-aaaa-1111")
        assert permits(_link(), prefs, kind) is False


# ===================================================================
# 2. shape_payload()
# ===================================================================

class TestShapePayload:
    """Scope-dependent masking of payload entries."""

    def test_phase_only_strips_dates(self):
        shaped = shape_payload(_link(share_scope="phase_only"), _payload())
        assert shaped == {"phase": "ovulation", "cycle_day": 14}
        print(f"  phase_only payload → {shaped}")

    def test_phase_plus_dates_passes_through(self):
        payload = _payload()
        shaped = shape_payload(_link(share_scope="phase_plus_dates"), payload)
        assert shaped == payload
        assert shaped is not payload

    def test_input_is_not_mutated(self):
        payload = _payload()
        shape_payload(_link(share_scope="phase_only"), payload)
        assert payload == _payload()

    @pytest.mark.parametrize(
        "key,value,expected",
        [
            ("date", "2026-01-15", True),
            ("next_period_date", "2026-02-01", True),
            ("ends_at", "2026-01-15T08:00:00Z", True),
            ("anything", date(2026, 1, 15), True),
            ("anything", datetime(2026, 1, 15, tzinfo=timezone.utc), True),
            ("phase", "luteal", False),
            ("cycle_day", 21, False),
            ("update", "none", False),
        ],
    )
    def test_is_date_entry(self, key, value, expected):
        assert is_date_entry(key, value) is expected


# ===================================================================
# 3. End to end
# ===================================================================

def test_ovulation_event_under_phase_only_scope():
    """An active phase_only link with defaults gets the phase, not the date."""
    link = _link(share_scope="phase_only")
    prefs = LinkNotificationPrefs(link_id=link.id)
    payload = {"phase": "ovulation", "date": "2026-01-15"}

    assert permits(link, prefs, "ovulation") is True
    assert shape_payload(link, payload) == {"phase": "ovulation"}


def test_ovulation_disabled_under_phase_only_scope():
    link = _link(share_scope="phase_only")
    prefs = LinkNotificationPrefs(
        link_id=link.id,
        phase_transitions=PhaseTransitions(ovulation=False),
    )
    assert permits(link, prefs, "ovulation") is False
