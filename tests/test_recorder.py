"""
Tests for the in-process metrics recorder
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from analysis.capacity_model import CapacityFamily
from analysis.decision import Decision


class TestRecording:
    def test_counters_accumulate(self, recorder):
        recorder.record_overlay_operation("create", "preference")
        recorder.record_overlay_operation("create", "preference")
        recorder.record_overlay_operation("delete", "preference")

        assert recorder.get("overlay_operations_total", operation="create", source="preference") == 2
        assert recorder.get("overlay_operations_total", operation="delete", source="preference") == 1
        assert recorder.get("overlay_operations_total", operation="update", source="preference") == 0

    def test_gauges_overwrite(self, recorder):
        recorder.set_active_overlays("reserved-instance", 4)
        recorder.set_active_overlays("reserved-instance", 2)

        assert recorder.get("overlays_active", source="reserved-instance") == 2

    def test_savings_plan_decision(self, recorder):
        recorder.record_decision(Decision(
            name="cost-aware-compute-sp-global",
            capacity_type=CapacityFamily.COMPUTE_SAVINGS_PLAN,
            should_exist=True,
            reason="ok",
            weight=10,
            utilization_percent=42.0,
            remaining_capacity=3.5,
        ))

        assert recorder.get(
            "decisions_total", capacity_type="compute-savings-plan", should_exist="true"
        ) == 1
        assert recorder.get(
            "savings_plan_utilization_percent",
            capacity_type="compute-savings-plan",
            name="cost-aware-compute-sp-global",
        ) == 42.0

    def test_reserved_decision(self, recorder):
        recorder.record_decision(Decision(
            name="cost-aware-ri-m5.large-us-west-2",
            capacity_type=CapacityFamily.RESERVED_INSTANCE,
            should_exist=True,
            reason="ok",
            weight=30,
            count=3,
        ))

        assert recorder.get("reserved_instances_total", name="cost-aware-ri-m5.large-us-west-2") == 3


class TestRender:
    def test_exposition_format(self, recorder):
        recorder.record_reconciliation("capacity", "success", 1.25)
        recorder.set_info("0.1.0", False, 95.0)
        recorder.record_preference_parse_error('np"quoted')

        text = recorder.render()

        assert "# TYPE overlay_controller_reconciliation_total counter" in text
        assert 'overlay_controller_reconciliation_total{loop="capacity",status="success"} 1' in text
        assert 'overlay_controller_reconciliation_duration_seconds{loop="capacity"} 1.25' in text
        assert 'overlay_controller_info{disabled_mode="false",threshold="95",version="0.1.0"} 1' in text
        assert 'nodepool="np\\"quoted"' in text
        assert text.startswith("# HELP overlay_controller_uptime_seconds")
        assert text.endswith("\n")
