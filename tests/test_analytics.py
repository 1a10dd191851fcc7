from zabbix_analytics import (
    NOT_IMPLEMENTED,
    analyze_resource_usage,
    calculate_maintenance_window,
    get_deployment_metrics,
    perform_security_audit,
)


def test_every_capability_reports_not_implemented():
    outcomes = [
        calculate_maintenance_window([{"clock": "1"}], "02:00"),
        analyze_resource_usage([]),
        perform_security_audit("custom", ["passwords"]),
        get_deployment_metrics("shop", "1.2.3", ["latency"]),
    ]

    assert [outcome.capability for outcome in outcomes] == [
        "calculate_maintenance_window",
        "analyze_resource_usage",
        "perform_security_audit",
        "get_deployment_metrics",
    ]
    for outcome in outcomes:
        assert outcome.status == NOT_IMPLEMENTED
        assert outcome.to_dict()["status"] == "not_implemented"


def test_no_figures_are_invented():
    window = calculate_maintenance_window([{"clock": "1"}, {"clock": "2"}])
    analysis = analyze_resource_usage({"unexpected": "shape"})

    assert set(window.to_dict()) == {"capability", "detail", "status"}
    assert "2 trend records" in window.detail
    assert "0 trend records" in analysis.detail
