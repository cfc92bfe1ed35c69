"""Tests for layered parameter resolution."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from decisionflow.service.parameters import ParameterResolver, ResolveContext
from decisionflow.storage.models import ParameterItem

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_item(code, value, scope="GLOBAL", scope_value=None, *, minutes_ago=60, **kwargs):
    stamp = NOW - timedelta(minutes=minutes_ago)
    return ParameterItem(
        id=f"{code}-{scope}-{scope_value}-{minutes_ago}",
        parameter_set_id="set-1",
        param_code=code,
        param_name=code,
        param_type=kwargs.pop("param_type", "number"),
        value=value,
        scope_level=scope,
        scope_value=scope_value,
        created_at=stamp,
        updated_at=stamp,
        **kwargs,
    )


def resolve(items, **context):
    resolved = ParameterResolver().resolve(items, ResolveContext(**context), now=NOW)
    return {entry.param_code: (entry.value, entry.source_scope) for entry in resolved}


class TestScopePriority:
    def test_narrower_matching_scope_wins(self):
        items = [
            make_item("margin", 0.05, "COMMODITY", "CU"),
            make_item("margin", 0.02, "GLOBAL"),
            make_item("margin", 0.01, "PUBLIC_TEMPLATE"),
        ]
        assert resolve(items, commodity="CU") == {"margin": (0.05, "COMMODITY")}

    def test_strategy_beats_region_and_route(self):
        items = [
            make_item("limit", 1, "REGION", "EAST"),
            make_item("limit", 2, "STRATEGY", "momentum"),
            make_item("limit", 3, "ROUTE", "SEA"),
        ]
        result = resolve(items, region="EAST", route="SEA", strategy="momentum")
        assert result == {"limit": (2, "STRATEGY")}

    def test_unmatched_dimension_is_ignored(self):
        items = [
            make_item("margin", 0.05, "COMMODITY", "AL"),
            make_item("margin", 0.02, "GLOBAL"),
        ]
        assert resolve(items, commodity="CU") == {"margin": (0.02, "GLOBAL")}
        assert resolve(items) == {"margin": (0.02, "GLOBAL")}

    def test_later_update_wins_within_scope(self):
        items = [
            make_item("margin", 0.03, "GLOBAL", minutes_ago=5),
            make_item("margin", 0.04, "GLOBAL", minutes_ago=50),
        ]
        assert resolve(items) == {"margin": (0.03, "GLOBAL")}


class TestSessionLayer:
    def test_stored_session_items_never_match(self):
        items = [make_item("margin", 0.9, "SESSION", "s-1"), make_item("margin", 0.1)]
        assert resolve(items) == {"margin": (0.1, "GLOBAL")}

    def test_session_overrides_win_and_add_codes(self):
        items = [make_item("margin", 0.05, "COMMODITY", "CU")]
        result = resolve(
            items, commodity="CU", session_overrides={"margin": 0.5, "adhoc": "yes"}
        )
        assert result == {"margin": (0.5, "SESSION"), "adhoc": ("yes", "SESSION")}


class TestFiltering:
    def test_inactive_items_are_skipped(self):
        items = [
            make_item("margin", 0.05, "COMMODITY", "CU", is_active=False),
            make_item("margin", 0.02),
        ]
        assert resolve(items, commodity="CU") == {"margin": (0.02, "GLOBAL")}

    def test_effective_window(self):
        items = [
            make_item("fee", 1, effective_from=NOW + timedelta(days=1)),
            make_item("fee2", 2, effective_to=NOW - timedelta(seconds=1)),
            make_item(
                "fee3",
                3,
                effective_from=NOW - timedelta(days=1),
                effective_to=NOW + timedelta(days=1),
            ),
            make_item("fee4", 4, effective_from=datetime(2026, 3, 1)),
        ]
        assert resolve(items) == {"fee3": (3, "GLOBAL"), "fee4": (4, "GLOBAL")}

    def test_value_falls_back_to_default(self):
        items = [
            make_item("a", None, default_value=7),
            make_item("b", None),
        ]
        assert resolve(items) == {"a": (7, "GLOBAL"), "b": (None, "GLOBAL")}


def test_resolve_snapshot_and_context_from_dict():
    items = [make_item("margin", 0.05, "COMMODITY", "CU"), make_item("fee", 2)]
    context = ResolveContext.from_dict({"commodity": "CU", "sessionOverrides": {"fee": 3}})

    snapshot = ParameterResolver().resolve_snapshot(items, context, now=NOW)

    assert snapshot == {"margin": 0.05, "fee": 3}


def test_default_clock_is_used_when_now_is_omitted():
    clock_calls = []

    def clock():
        clock_calls.append(1)
        return NOW

    resolver = ParameterResolver(clock=clock)
    resolved = resolver.resolve([make_item("fee", 2)])

    assert clock_calls == [1]
    assert [r.to_dict() for r in resolved] == [
        {"paramCode": "fee", "value": 2, "sourceScope": "GLOBAL"}
    ]


def test_commodity_scope_and_session_override():
    items = [
        make_item("x", 1, "GLOBAL"),
        make_item("x", 2, "COMMODITY", "CORN"),
    ]
    assert resolve(items, commodity="CORN") == {"x": (2, "COMMODITY")}
    assert resolve(items, session_overrides={"x": 9}) == {"x": (9, "SESSION")}
    assert resolve(items, commodity="CORN", session_overrides={"x": 9}) == {"x": (9, "SESSION")}
