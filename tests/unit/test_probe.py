"""Unit tests for the health probe (liveness checks and resource sampling)."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from upkeep.capabilities.process import CommandResult
from upkeep.observability.models import IssueCode, MetricSample, ResourceThresholds
from upkeep.observability.probe import HealthProbe, ProbeSettings, count_error_lines

REAL_ASYNC_CLIENT = httpx.AsyncClient


def _client_with(handler):
    def factory(*args, **kwargs):
        return REAL_ASYNC_CLIENT(*args, transport=httpx.MockTransport(handler), **kwargs)

    return factory


def _probe(tmp_path, config_text: str = "{}") -> HealthProbe:
    config_file = tmp_path / "openclaw.json"
    config_file.write_text(config_text)
    return HealthProbe(ProbeSettings(config_file=config_file, install_dir=tmp_path, port=18789))


def _sample(**overrides) -> MetricSample:
    values = dict(
        timestamp=1700000000,
        mem_used_pct=50.0,
        mem_avail_mb=4000,
        disk_used_pct=50.0,
        service_rss_mb=200,
        aux_proc_mb=100,
    )
    values.update(overrides)
    return MetricSample(**values)


class TestHttpCheck:
    """HTTP liveness over the configured health paths."""

    @pytest.mark.asyncio
    async def test_falls_through_to_second_path(self, tmp_path):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(503 if request.url.path == "/healthz" else 200)

        with patch.object(httpx, "AsyncClient", side_effect=_client_with(handler)):
            assert await _probe(tmp_path).check_http() is True
        assert seen == ["/healthz", "/"]

    @pytest.mark.asyncio
    async def test_all_paths_erroring(self, tmp_path):
        with patch.object(httpx, "AsyncClient", side_effect=_client_with(lambda r: httpx.Response(500))):
            assert await _probe(tmp_path).check_http() is False

    @pytest.mark.asyncio
    async def test_connection_refused(self, tmp_path):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with patch.object(httpx, "AsyncClient", side_effect=_client_with(handler)):
            assert await _probe(tmp_path).check_http() is False

    @pytest.mark.asyncio
    async def test_redirect_counts_as_up(self, tmp_path):
        with patch.object(httpx, "AsyncClient", side_effect=_client_with(lambda r: httpx.Response(302))):
            assert await _probe(tmp_path).check_http() is True

    @pytest.mark.asyncio
    async def test_wait_for_http_polls(self, tmp_path):
        probe = _probe(tmp_path)
        with patch.object(probe, "check_http", AsyncMock(side_effect=[False, False, True])):
            assert await probe.wait_for_http(5, interval_seconds=0.01) is True

    @pytest.mark.asyncio
    async def test_wait_for_http_gives_up(self, tmp_path):
        probe = _probe(tmp_path)
        with patch.object(probe, "check_http", AsyncMock(return_value=False)) as check:
            assert await probe.wait_for_http(0, interval_seconds=0.01) is False
        assert check.await_count == 1


class TestAuxChannel:
    """Journal-based error counting for the auxiliary channel."""

    def test_count_error_lines(self):
        text = "ok\ntelegram polling error\nETELEGRAM 409\nTelegram error again\n"
        assert count_error_lines(text, r"telegram.*error|ETELEGRAM") == 3

    @pytest.mark.asyncio
    async def test_skipped_when_not_configured(self, tmp_path):
        probe = _probe(tmp_path, '{"discord": {}}')
        with patch("upkeep.observability.probe.run_command", AsyncMock()) as run:
            assert await probe.check_aux_channel() is True
        run.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unhealthy_above_threshold(self, tmp_path):
        probe = _probe(tmp_path, '{"telegram": {"botToken": "x"}}')
        journal = "\n".join(["telegram polling error"] * 4)
        with patch(
            "upkeep.observability.probe.run_command",
            AsyncMock(return_value=CommandResult(ok=True, returncode=0, stdout=journal)),
        ):
            assert await probe.check_aux_channel() is False

    @pytest.mark.asyncio
    async def test_threshold_is_exclusive(self, tmp_path):
        probe = _probe(tmp_path, '{"telegram": {"botToken": "x"}}')
        journal = "\n".join(["telegram polling error"] * 3)
        with patch(
            "upkeep.observability.probe.run_command",
            AsyncMock(return_value=CommandResult(ok=True, returncode=0, stdout=journal)),
        ):
            assert await probe.check_aux_channel() is True

    @pytest.mark.asyncio
    async def test_non_utf8_config_still_checked(self, tmp_path):
        config_file = tmp_path / "openclaw.json"
        config_file.write_bytes(b'{"telegram": {"name": "caf\xe9"}}')
        probe = HealthProbe(ProbeSettings(config_file=config_file, install_dir=tmp_path, port=18789))
        journal = "\n".join(["telegram polling error"] * 4)
        with patch(
            "upkeep.observability.probe.run_command",
            AsyncMock(return_value=CommandResult(ok=True, returncode=0, stdout=journal)),
        ):
            assert probe.channel_configured() is True
            assert await probe.check_aux_channel() is False

    @pytest.mark.asyncio
    async def test_journal_unavailable_is_healthy(self, tmp_path):
        probe = _probe(tmp_path, '{"telegram": {"botToken": "x"}}')
        with patch(
            "upkeep.observability.probe.run_command",
            AsyncMock(return_value=CommandResult(ok=False, returncode=None, error_code="command_not_found")),
        ):
            assert await probe.check_aux_channel() is True


class TestProbe:
    """Combined liveness result."""

    @pytest.mark.asyncio
    async def test_issues_reflect_failed_checks(self, tmp_path):
        probe = _probe(tmp_path)
        with patch.object(probe, "check_process", AsyncMock(return_value=True)), \
                patch.object(probe, "check_http", AsyncMock(return_value=False)), \
                patch.object(probe, "check_aux_channel", AsyncMock(return_value=False)):
            result = await probe.probe()
        assert result.healthy is False
        assert result.issues == {IssueCode.HTTP_DOWN, IssueCode.TELEGRAM_ERRORS}

    @pytest.mark.asyncio
    async def test_channel_errors_alone_stay_healthy(self, tmp_path):
        probe = _probe(tmp_path)
        with patch.object(probe, "check_process", AsyncMock(return_value=True)), \
                patch.object(probe, "check_http", AsyncMock(return_value=True)), \
                patch.object(probe, "check_aux_channel", AsyncMock(return_value=False)):
            result = await probe.probe()
        assert result.healthy is True
        assert result.issues == {IssueCode.TELEGRAM_ERRORS}

    @pytest.mark.asyncio
    async def test_process_check_swallows_errors(self, tmp_path):
        probe = _probe(tmp_path)
        with patch("upkeep.observability.probe.find_processes", side_effect=RuntimeError("psutil broke")):
            assert await probe.check_process() is False

    @pytest.mark.asyncio
    async def test_process_check_falls_back_to_port(self, tmp_path):
        probe = _probe(tmp_path)
        with patch("upkeep.observability.probe.find_processes", return_value=[]), \
                patch("upkeep.observability.probe.port_listening", return_value=True):
            assert await probe.check_process() is True

    @pytest.mark.asyncio
    async def test_reachability_labels(self, tmp_path):
        probe = _probe(tmp_path)
        with patch.object(probe, "check_http", AsyncMock(return_value=False)), \
                patch.object(probe, "check_process", AsyncMock(return_value=True)):
            assert await probe.reachability() == "process-found"
        with patch.object(probe, "check_http", AsyncMock(return_value=False)), \
                patch.object(probe, "check_process", AsyncMock(return_value=False)):
            assert await probe.reachability() == "not-running"


class TestResources:
    """Threshold classification and auxiliary process cleanup."""

    def test_classify(self, tmp_path):
        probe = _probe(tmp_path)
        warnings, criticals = probe.classify(_sample(mem_used_pct=85.0, disk_used_pct=95.0))
        assert len(warnings) == 1 and warnings[0].startswith("memory")
        assert len(criticals) == 1 and criticals[0].startswith("disk")

    def test_classify_boundaries_inclusive(self, tmp_path):
        probe = _probe(tmp_path)
        probe.settings.thresholds = ResourceThresholds(service_rss_warn_mb=100, service_rss_crit_mb=200)
        _, criticals = probe.classify(_sample(service_rss_mb=200))
        assert criticals and criticals[0].startswith("service_rss")

    @pytest.mark.asyncio
    async def test_aux_group_terminated_on_critical(self, tmp_path):
        probe = _probe(tmp_path)
        sample = _sample(aux_proc_mb=4096)
        procs = [MagicMock(), MagicMock()]
        with patch.object(probe, "_collect_sample", return_value=(sample, procs)), \
                patch("upkeep.observability.probe.terminate_processes", return_value=2) as terminate:
            report = await probe.sample_resources()
        terminate.assert_called_once_with(procs)
        assert report.aux_restarted is True
        assert IssueCode.RESOURCE_CRIT in report.issues

    @pytest.mark.asyncio
    async def test_no_cleanup_below_critical(self, tmp_path):
        probe = _probe(tmp_path)
        sample = _sample(aux_proc_mb=1500)
        with patch.object(probe, "_collect_sample", return_value=(sample, [MagicMock()])), \
                patch("upkeep.observability.probe.terminate_processes") as terminate:
            report = await probe.sample_resources()
        terminate.assert_not_called()
        assert report.aux_restarted is False
        assert report.issues == {IssueCode.RESOURCE_WARN}
