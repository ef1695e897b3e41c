from irsa_check.errors import (ConfigurationAbsent, DiscoveryError, FailureCategory, IdentityMismatch,
                               PolicyValidationFailure, ProbeInfrastructureError)
from irsa_check.reporter import FAIL, PASS, SKIP, Reporter


def test_empty_reporter_is_ok():
    assert Reporter().exit_code() == 0


def test_passes_and_skips_are_ok():
    reporter = Reporter()
    reporter.passed("zeebe", "role-exists", "IAM role exists")
    reporter.skipped("zeebe", "identity-probe", "Skipped: live probes are disabled")
    assert not reporter.has_failures()
    assert reporter.exit_code() == 0


def test_exit_code_follows_category_priority():
    reporter = Reporter()
    reporter.failed("zeebe", "identity-probe", IdentityMismatch("assumed the node role"))
    reporter.failed("operate", "permissions", PolicyValidationFailure("no es:ESHttpGet"))
    reporter.failed("identity", "role-annotation", DiscoveryError("no annotation"))
    assert reporter.exit_code() == FailureCategory.DISCOVERY.exit_code == 4
    reporter.failed("identity", "username", ConfigurationAbsent("no username"))
    assert reporter.exit_code() == 2


def test_probe_infrastructure_status():
    reporter = Reporter()
    reporter.failed("zeebe", "identity-probe", ProbeInfrastructureError("pod timed out"))
    assert reporter.exit_code() == 6
    assert reporter.failure_categories() == [FailureCategory.PROBE_INFRASTRUCTURE]


def test_failed_records_category_and_meta():
    reporter = Reporter()
    result = reporter.failed("zeebe", "role-annotation", DiscoveryError("missing", {"service_account": "camunda-zeebe"}))
    assert result.status == FAIL
    assert result.id == "zeebe.role-annotation"
    assert result.meta == {"service_account": "camunda-zeebe"}
    assert reporter.for_component("zeebe") == [result]
    assert reporter.for_component("operate") == []


def test_to_json():
    reporter = Reporter()
    reporter.passed("cluster", "aws-environment", "AWS environment detected")
    reporter.failed("zeebe", "permissions", PolicyValidationFailure("no grant"))
    report = reporter.to_json()
    assert report["exit_code"] == 5
    assert [c["status"] for c in report["checks"]] == [PASS, FAIL]
    assert report["checks"][1]["category"] == "policy"


def test_print_text(capsys):
    reporter = Reporter()
    reporter.passed("zeebe", "service-account", "exists")
    reporter.skipped("zeebe", "identity-probe", "Skipped: live probes are disabled")
    reporter.print_text()
    out = capsys.readouterr().out
    assert "[PASS] zeebe.service-account: exists" in out
    assert f"[{SKIP}] zeebe.identity-probe" in out
    assert "Summary: 1 passed, 1 skipped, 0 failed (total 2)" in out


def test_family_keeps_same_component_apart(capsys):
    reporter = Reporter()
    reporter.passed("zeebe", "permissions", "es:ESHttpGet granted", family="opensearch")
    reporter.failed("zeebe", "permissions", PolicyValidationFailure("no rds-db:connect"), family="postgresql")
    assert [c.status for c in reporter.for_component("zeebe", "opensearch")] == [PASS]
    assert [c.status for c in reporter.for_component("zeebe", "postgresql")] == [FAIL]
    assert len(reporter.for_component("zeebe")) == 2
    reporter.print_text()
    out = capsys.readouterr().out
    assert "[PASS] opensearch/zeebe.permissions" in out
    assert "[FAIL] postgresql/zeebe.permissions" in out
