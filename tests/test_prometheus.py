from broadcast_engine.prometheus import BroadcastMetrics


def test_broadcast_metrics_counters_and_gauge():
    metrics = BroadcastMetrics()

    metrics.inc_sent("main")
    metrics.inc_sent("main")
    metrics.inc_send_error("")
    metrics.inc_execution("partial")
    metrics.inc_processed()
    metrics.set_due(4)

    output = metrics.generate_latest()
    assert b'wab_sent_total{instance_id="main"} 2.0' in output
    assert b'wab_send_errors_total{instance_id="default"} 1.0' in output
    assert b'wab_executions_total{status="partial"} 1.0' in output
    assert b"wab_jobs_processed_total 1.0" in output
    assert b"wab_due_jobs 4.0" in output


def test_instances_use_separate_registries():
    first = BroadcastMetrics()
    second = BroadcastMetrics()
    first.inc_processed()
    assert b"wab_jobs_processed_total 0.0" in second.generate_latest()
