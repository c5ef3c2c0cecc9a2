"""Tests for tailscale serve route parsing and stale-route reconciliation."""
from __future__ import annotations

import json

import pytest

from conftest import FakeTailscaleRuntime
from tailserve.capabilities.tailscale.routes import (
    CleanupSummary,
    RouteEntry,
    RouteReconciler,
    classify_routes,
    parse_self_dns_name,
    parse_serve_routes,
)
from tailserve.config import RuntimeMode
from tailserve.storage.state_store import TailserveState

SERVE_STATUS = """\
https://host.tailnet.ts.net (tailnet only)
|-- / proxy http://127.0.0.1:7899

https://host.tailnet.ts.net:8443 (tailnet only)
|-- /gateway proxy http://127.0.0.1:18789
|-- /other   proxy http://127.0.0.1:4001

https://host.tailnet.ts.net:10443 (tailnet only)
|-- / proxy http://127.0.0.1:4002

https://host.tailnet.ts.net:11443 (tailnet only)
|-- / proxy http://localhost:4003
"""


def _reconciler(runtime: FakeTailscaleRuntime, **kwargs) -> RouteReconciler:
    return RouteReconciler(runtime, **kwargs)


class TestParseServeRoutes:
    def test_parses_every_mapping_under_its_header(self):
        routes = parse_serve_routes(SERVE_STATUS)
        assert routes == [
            RouteEntry(443, 7899),
            RouteEntry(8443, 18789),
            RouteEntry(8443, 4001),
            RouteEntry(10443, 4002),
            RouteEntry(11443, 4003),
        ]

    def test_header_without_port_defaults_to_443(self):
        routes = parse_serve_routes("https://box.ts.net\n|-- / proxy http://127.0.0.1:3000\n")
        assert routes == [RouteEntry(443, 3000)]

    def test_non_loopback_backends_are_ignored(self):
        text = (
            "https://box.ts.net:8443 (Funnel on)\n"
            "|-- / proxy http://10.0.0.5:3000\n"
            "|-- /static path /var/www\n"
        )
        assert parse_serve_routes(text) == []

    def test_mapping_before_any_header_uses_443(self):
        assert parse_serve_routes("|-- / proxy http://localhost:5000") == [RouteEntry(443, 5000)]

    def test_empty_and_garbage_input(self):
        assert parse_serve_routes("") == []
        assert parse_serve_routes("No serve config\n") == []


class TestParseSelfDnsName:
    def test_strips_trailing_dot(self):
        data = json.dumps({"Self": {"DNSName": "box.tailnet.ts.net."}})
        assert parse_self_dns_name(data) == "box.tailnet.ts.net"

    @pytest.mark.parametrize("text", [
        "not json",
        "[]",
        json.dumps({"Self": None}),
        json.dumps({"Self": {"DNSName": 5}}),
        json.dumps({"Self": {"DNSName": "."}}),
        json.dumps({}),
    ])
    def test_returns_none_for_unusable_status(self, text):
        assert parse_self_dns_name(text) is None


class TestClassifyRoutes:
    def test_protected_wins_over_live_and_stale(self):
        routes = [RouteEntry(9443, 18789), RouteEntry(9443, 5000), RouteEntry(9443, 5001)]
        summary = classify_routes(routes, [18789], lambda p: p == 5000)
        assert summary == CleanupSummary(removed=[], protected=[9443], skipped=[])

    def test_live_backend_skips_whole_port(self):
        routes = [RouteEntry(9443, 5000), RouteEntry(9443, 5001)]
        summary = classify_routes(routes, [], lambda p: p == 5000)
        assert summary == CleanupSummary(removed=[], protected=[], skipped=[9443])

    def test_443_is_always_protected(self):
        summary = classify_routes([RouteEntry(443, 1234)], [], lambda p: False)
        assert summary.protected == [443]
        assert summary.removed == []

    def test_results_are_sorted_and_unique(self):
        routes = [RouteEntry(9443, 1), RouteEntry(8443, 2), RouteEntry(9443, 3)]
        summary = classify_routes(routes, [], lambda p: False)
        assert summary.removed == [8443, 9443]


class TestCleanupStaleRoutes:
    def test_removes_only_stale_ports(self):
        runtime = FakeTailscaleRuntime(serve_status=SERVE_STATUS, live_ports={4003})
        summary = _reconciler(runtime).cleanup_stale_routes(protected_ports=[18789])

        assert summary.removed == [10443]
        assert summary.protected == [443, 8443]
        assert summary.skipped == [11443]
        assert runtime.teardowns == [10443]

    def test_dry_run_reports_same_partition_without_teardown(self):
        live = FakeTailscaleRuntime(serve_status=SERVE_STATUS, live_ports={4003})
        preview = FakeTailscaleRuntime(serve_status=SERVE_STATUS, live_ports={4003})

        real = _reconciler(live).cleanup_stale_routes(protected_ports=[18789])
        dry = _reconciler(preview).cleanup_stale_routes(protected_ports=[18789], dry_run=True)

        assert dry == real
        assert preview.teardowns == []

    def test_partition_is_disjoint(self):
        runtime = FakeTailscaleRuntime(serve_status=SERVE_STATUS, live_ports={4001, 4003})
        summary = _reconciler(runtime).cleanup_stale_routes(protected_ports=[18789], dry_run=True)
        removed, protected, skipped = map(set, (summary.removed, summary.protected, summary.skipped))
        assert not removed & protected
        assert not removed & skipped
        assert not protected & skipped

    def test_falls_back_to_configured_then_default_protected_ports(self):
        runtime = FakeTailscaleRuntime(serve_status=SERVE_STATUS)
        summary = _reconciler(runtime).cleanup_stale_routes(dry_run=True)
        assert 8443 in summary.protected

        runtime = FakeTailscaleRuntime(serve_status=SERVE_STATUS)
        summary = _reconciler(runtime, protected_ports=[4002]).cleanup_stale_routes(dry_run=True)
        assert 10443 in summary.protected
        assert 8443 in summary.removed

    @pytest.mark.parametrize("status", [None, "", "   \n"])
    def test_empty_status_is_a_no_op(self, status):
        runtime = FakeTailscaleRuntime(serve_status=status)
        assert _reconciler(runtime).cleanup_stale_routes() == CleanupSummary()
        assert runtime.teardowns == []

    def test_dry_run_mode_never_reads_status(self):
        runtime = FakeTailscaleRuntime(serve_status=SERVE_STATUS)
        summary = _reconciler(runtime, mode=RuntimeMode.DRY_RUN).cleanup_stale_routes()
        assert summary == CleanupSummary()
        assert runtime.calls == []


class TestEnableRoute:
    def test_success_refreshes_hostname(self):
        runtime = FakeTailscaleRuntime(
            status_json=json.dumps({"Self": {"DNSName": "box.tailnet.ts.net."}}),
        )
        state = TailserveState(port=7900, ts_port=7900)

        assert _reconciler(runtime).enable_route(state) is None
        assert state.ts_hostname == "box.tailnet.ts.net"
        assert state.ts_protocol == "https"
        assert ("serve-on", 7900, 7900) in runtime.calls

    def test_failure_falls_back_to_localhost(self):
        runtime = FakeTailscaleRuntime(enable_ok=False)
        state = TailserveState(port=7900, ts_hostname="box.ts.net", ts_port=8443)

        warning = _reconciler(runtime).enable_route(state)

        assert warning == "Warning: tailscale unavailable, using http://localhost:7900"
        assert state.ts_hostname == "localhost"
        assert state.ts_port == 7900
        assert state.ts_protocol == "http"
        assert state.share_origin() == "http://localhost:7900"

    def test_dry_run_mode_sets_https_without_calls(self):
        runtime = FakeTailscaleRuntime()
        state = TailserveState(ts_protocol="http")
        assert _reconciler(runtime, mode=RuntimeMode.DRY_RUN).enable_route(state) is None
        assert state.ts_protocol == "https"
        assert runtime.calls == []

    def test_funnel_uses_funnel_command(self):
        runtime = FakeTailscaleRuntime()
        state = TailserveState(port=7900, ts_port=7900)
        _reconciler(runtime).enable_funnel_route(state)
        assert ("funnel-on", 7900, 7900) in runtime.calls

    def test_first_share_only(self):
        runtime = FakeTailscaleRuntime()
        reconciler = _reconciler(runtime)

        reconciler.ensure_for_first_share(TailserveState(shares={"a": {}}))
        assert runtime.calls == []

        reconciler.ensure_for_first_share(TailserveState())
        assert any(c[0] == "serve-on" for c in runtime.calls)

    def test_restored_routes_need_a_share_or_project(self):
        runtime = FakeTailscaleRuntime()
        reconciler = _reconciler(runtime)

        reconciler.ensure_for_restored_routes(TailserveState())
        assert runtime.calls == []

        reconciler.ensure_for_restored_routes(TailserveState(projects={"p": {}}))
        assert any(c[0] == "serve-on" for c in runtime.calls)


class TestDisable:
    def test_disable_route_targets_ts_port(self):
        runtime = FakeTailscaleRuntime()
        _reconciler(runtime).disable_route(TailserveState(ts_port=8443))
        assert runtime.teardowns == [8443]

    def test_disable_funnel_route(self):
        runtime = FakeTailscaleRuntime()
        _reconciler(runtime).disable_funnel_route(TailserveState(ts_port=8443))
        assert runtime.calls == [("funnel-off", 8443)]

    def test_clean_stale_mapping_rejects_invalid_ports(self):
        runtime = FakeTailscaleRuntime()
        reconciler = _reconciler(runtime)
        assert reconciler.clean_stale_mapping(0) is False
        assert reconciler.clean_stale_mapping(70000) is False
        assert runtime.calls == []
        assert reconciler.clean_stale_mapping(7899) is True
        assert runtime.teardowns == [7899]
