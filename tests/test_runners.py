"""Tests for the engine tool runners: UAT, BuildGraph, Gauntlet, automation, visual, scenario"""
import json
import os

import pytest

from conftest import FakeExecutor
from cirobot.automation import (
    AutomationTestConfig, build_command_args, list_automation_tests, parse_automation_report,
    parse_test_list, run_automation_tests,
)
from cirobot.buildgraph import (
    BuildGraphExecutor, parse_available_nodes, parse_errors, parse_node_results, write_sample_script,
)
from cirobot.gauntlet import GauntletRunner, GauntletTestConfig, TEST_TIERS, parse_gauntlet_result
from cirobot.models import ProcessResult
from cirobot.scenario import (
    GoldenScenarioRunner, InputAction, ScenarioAssertion, ScenarioConfig, evaluate_assertions,
    parse_metrics, scenario_from_template,
)
from cirobot.uat import UATRunner, resolve_engine_path
from cirobot.visual import VisualRegressionRunner

ENGINE = "/opt/UE/Engine"
PROJECT = "/p/Game.uproject"


def _uat(executor):
    return UATRunner(ENGINE, PROJECT, executor=executor)


# =============================================================================
# UAT
# =============================================================================

class TestUATRunner:
    """Tests for argument assembly around RunUAT"""

    async def test_appends_project(self):
        executor = FakeExecutor()
        runner = _uat(executor)
        await runner.run("BuildCookRun", ["-cook"])
        call = executor.calls[0]
        assert call["command"] == runner.get_uat_path()
        assert call["args"] == ["BuildCookRun", "-cook", f"-project={PROJECT}"]
        assert call["timeout"] == 600000

    async def test_explicit_project_kept(self):
        executor = FakeExecutor()
        await _uat(executor).run("BuildCookRun", ["-project=/other/X.uproject"])
        assert executor.calls[0]["args"] == ["BuildCookRun", "-project=/other/X.uproject"]

    async def test_cwd_is_project_dir_when_present(self, tmp_dir):
        executor = FakeExecutor()
        await UATRunner(ENGINE, os.path.join(tmp_dir, "Game.uproject"), executor=executor).run("Cmd")
        assert executor.calls[0]["cwd"] == tmp_dir

    async def test_cwd_none_when_missing(self):
        executor = FakeExecutor()
        await _uat(executor).run("Cmd")
        assert executor.calls[0]["cwd"] is None

    async def test_build_cook_run_flags(self):
        executor = FakeExecutor()
        await _uat(executor).build_cook_run(platform="Linux", cook=True, pak=True, archive_dir="/out")
        assert executor.calls[0]["args"][:6] == [
            "BuildCookRun", "-platform=Linux", "-cook", "-pak", "-archivedirectory=/out", "-unattended",
        ]

    async def test_fill_ddc_joins_maps(self):
        executor = FakeExecutor()
        await _uat(executor).fill_ddc(["/Game/A", "/Game/B"])
        assert "-Map=/Game/A+/Game/B" in executor.calls[0]["args"]

    async def test_command_helpers(self):
        executor = FakeExecutor()
        runner = _uat(executor)
        await runner.compile_all_blueprints()
        await runner.resave_packages("/Game/Maps")
        await runner.run_gauntlet("FPS.Smoke.Startup", max_retries=1, timeout=1000)
        await runner.run_automation_tests("Project.", report_dir="/r", null_rhi=True)

        first, second, third, fourth = (c["args"] for c in executor.calls)
        assert first[:2] == ["CompileAllBlueprints", "-unattended"]
        assert "-PackageFilter=/Game/Maps" in second
        assert third[:5] == ["RunUnreal", "-test=FPS.Smoke.Startup", "-platform=Win64",
                             "-configuration=Development", "-MaxRetries=1"]
        assert executor.calls[2]["timeout"] == 1000
        assert fourth[1:4] == ["-ExecCmds=Automation RunTest Project.;Quit", "-unattended", "-ReportExportPath=/r"]
        assert "-NullRHI" in fourth

    def test_engine_path_from_environment(self, monkeypatch):
        monkeypatch.setenv("UE_ENGINE_PATH", "/env/Engine")
        assert resolve_engine_path() == "/env/Engine"
        assert resolve_engine_path("/explicit") == "/explicit"


# =============================================================================
# BuildGraph
# =============================================================================

BUILD_LOG = """Parsing script
Running node CompileEditor
Compiling module Core
Completed node CompileEditor
Running node 'Cook'
cook output
Failed node Cook
"""


class TestBuildGraph:
    """Tests for BuildGraph argument building and log parsing"""

    def test_build_args_defaults(self):
        executor = BuildGraphExecutor(ENGINE, PROJECT, uat=_uat(FakeExecutor()))
        assert executor.build_args("ci.xml", ["CompileEditor", "Cook"], {}) == [
            "-Script=ci.xml", "-Target=CompileEditor+Cook", f"-Set:ProjectPath={PROJECT}",
            "-Set:Platform=Win64", "-P4",
        ]

    def test_build_args_options(self):
        executor = BuildGraphExecutor(ENGINE, PROJECT, uat=_uat(FakeExecutor()))
        args = executor.build_args("ci.xml", ["Test"], {
            "platform": "Linux", "configuration": "Shipping", "shared_ddc": "//nas/ddc",
            "no_p4": True, "distributed_build": True, "additional_args": ["-Clean"],
        })
        assert args[3:] == [
            "-Set:Platform=Linux", "-Set:Configuration=Shipping", "-Set:SharedStorageDir=//nas/ddc",
            "-NoP4", "-DistributedBuild", "-Clean",
        ]

    async def test_execute_parses_nodes(self):
        fake = FakeExecutor({"BuildGraph": ProcessResult(exit_code=1, stdout=BUILD_LOG)})
        result = await BuildGraphExecutor(ENGINE, PROJECT, uat=_uat(fake)).execute("ci.xml", ["Cook"])
        assert not result.success
        assert result.exit_code == 1
        assert [(n.name, n.success) for n in result.nodes] == [("CompileEditor", True), ("Cook", False)]
        assert fake.calls[0]["timeout"] == 3600000

    def test_open_node_counts_as_success(self):
        nodes = parse_node_results("Running node Package\nstill going\n")
        assert len(nodes) == 1
        assert nodes[0].success
        assert "still going" in nodes[0].output

    async def test_validate_uses_list_only(self):
        fake = FakeExecutor({"-ListOnly": ProcessResult(exit_code=0, stdout="Node: CompileEditor\n- Cook\n")})
        validation = await BuildGraphExecutor(ENGINE, PROJECT, uat=_uat(fake)).validate("ci.xml", ["Cook"])
        assert validation.valid
        assert validation.available_nodes == ["CompileEditor", "Cook"]

    def test_parse_helpers(self):
        assert parse_available_nodes("  Node 'Stage' depends on Cook\n") == ["Stage"]
        assert parse_errors("ok\nERROR: missing file\nFailed to parse\n") == [
            "ERROR: missing file", "Failed to parse",
        ]

    async def test_generate_schema(self):
        fake = FakeExecutor()
        await BuildGraphExecutor(ENGINE, PROJECT, uat=_uat(fake)).generate_schema("/out/BuildGraph.xsd")
        assert fake.calls[0]["args"][:2] == ["BuildGraph", "-Schema=/out/BuildGraph.xsd"]

    def test_write_sample_script(self, tmp_dir):
        path = write_sample_script(os.path.join(tmp_dir, "Build", "BuildGraph_CI.xml"))
        with open(path) as f:
            content = f.read()
        assert content.startswith("<?xml")
        assert 'Name="CompileEditor"' in content


# =============================================================================
# Gauntlet
# =============================================================================

class TestGauntlet:
    """Tests for tiers and retries"""

    async def test_passing_test_runs_once(self):
        fake = FakeExecutor({"RunUnreal": ProcessResult(exit_code=0, stdout="3 test(s) passed\n")})
        result = await GauntletRunner(ENGINE, PROJECT, uat=_uat(fake)).run_test(
            GauntletTestConfig(test="FPS.Smoke.Startup", max_retries=2))
        assert result.success
        assert result.passed == 3
        assert result.retry_count == 0
        assert len(fake.calls) == 1

    async def test_failing_test_retries(self, tmp_dir):
        fake = FakeExecutor({"RunUnreal": ProcessResult(exit_code=1, stdout="1 test(s) failed\n")})
        result = await GauntletRunner(ENGINE, PROJECT, uat=_uat(fake)).run_test(
            GauntletTestConfig(test="FPS.Gameplay.Combat", max_retries=2, report_dir=tmp_dir))
        assert not result.success
        assert result.retry_count == 2
        assert len(fake.calls) == 3
        assert fake.calls[2]["log_file"] == os.path.join(tmp_dir, "FPS.Gameplay.Combat_2.log")
        assert "-MaxRetries=2" in fake.calls[0]["args"]

    async def test_smoke_failure_aborts_tier(self):
        fake = FakeExecutor({"FPS.Smoke.Startup": ProcessResult(exit_code=1)})
        results = await GauntletRunner(ENGINE, PROJECT, uat=_uat(fake)).run_tier("smoke")
        assert [r.test_name for r in results] == ["FPS.Smoke.Startup"]

    async def test_all_tiers_gated(self):
        fake = FakeExecutor({"FPS.Gameplay.Combat": ProcessResult(exit_code=1)})
        outcome = await GauntletRunner(ENGINE, PROJECT, uat=_uat(fake)).run_all_tiers()
        assert len(outcome["smoke"]) == len(TEST_TIERS["smoke"])
        assert len(outcome["full"]) == len(TEST_TIERS["full"])
        assert outcome["stress"] == []
        assert outcome["overall_success"] is False

    def test_parse_result_metrics_and_failures(self):
        stdout = "Average FPS: 59.5\nMinimum FPS: 31\nAssertion failed: ammo < 0\n"
        result = parse_gauntlet_result("T", ProcessResult(exit_code=1, stdout=stdout), "Win64", "Development", 1)
        assert result.failed == 1
        assert result.metrics.avg_fps == 59.5
        assert result.failures[0].message == "Assertion failed: ammo < 0"


# =============================================================================
# Automation tests
# =============================================================================

class TestAutomation:
    """Tests for the headless automation runner"""

    def _config(self, tmp_dir, **kwargs):
        return AutomationTestConfig(project_path=PROJECT, filter="Project.Smoke", artifact_dir=tmp_dir,
                                    engine_path=ENGINE, **kwargs)

    def test_null_rhi_only_without_rendering(self, tmp_dir):
        headless = build_command_args(self._config(tmp_dir), "/r")
        rendered = build_command_args(self._config(tmp_dir, requires_rendering=True), "/r")
        assert "-NullRHI" in headless
        assert not any(a.lower() == "-nullrhi" for a in rendered)
        assert headless[1] == "-ExecCmds=Automation RunTest Project.Smoke;Quit"

    async def test_run_reads_report(self, tmp_dir):
        report_dir = os.path.join(tmp_dir, "automation-report")
        os.makedirs(report_dir)
        with open(os.path.join(report_dir, "index.json"), "w") as f:
            json.dump({"tests": [
                {"name": "Project.Smoke.Boot", "state": "success"},
                {"name": "Project.Smoke.Menu", "state": "fail", "message": "widget missing"},
            ]}, f)
        executor = FakeExecutor()

        result = await run_automation_tests(self._config(tmp_dir), executor)

        assert not result.success
        assert (result.passed, result.failed, result.total) == (1, 1, 2)
        assert result.failures[0].name == "Project.Smoke.Menu"
        assert result.failures[0].message == "widget missing"
        assert "UnrealEditor-Cmd" in executor.calls[0]["command"]

    def test_summary_report(self, tmp_dir):
        with open(os.path.join(tmp_dir, "index.json"), "w") as f:
            json.dump({"passed": 4, "failed": 0, "skipped": 1}, f)
        counts = parse_automation_report(tmp_dir)
        assert counts["total"] == 5

    def test_log_fallback(self, tmp_dir):
        with open(os.path.join(tmp_dir, "run.log"), "w") as f:
            f.write("7 tests passed\n2 tests failed\n")
        counts = parse_automation_report(tmp_dir)
        assert (counts["passed"], counts["failed"], counts["total"]) == (7, 2, 9)

    async def test_list_tests(self):
        fake = FakeExecutor({"Automation List": ProcessResult(
            exit_code=0, stdout="Found tests:\n    Project.Smoke.Boot\n    FPS.Visual.Baseline\nLogExit\n")})
        assert await list_automation_tests(PROJECT, ENGINE, fake) == ["Project.Smoke.Boot", "FPS.Visual.Baseline"]

    def test_parse_test_list_ignores_plain_lines(self):
        assert parse_test_list("no indent.Name\n") == []


# =============================================================================
# Visual regression
# =============================================================================

class TestVisualRegression:
    """Tests for baseline capture and comparison"""

    def _runner(self, tmp_dir, executor, threshold=None):
        return VisualRegressionRunner(PROJECT, ENGINE, os.path.join(tmp_dir, "baselines"),
                                      os.path.join(tmp_dir, "run"), comparison_threshold=threshold,
                                      executor=executor)

    async def test_capture_counts_screenshots(self, tmp_dir):
        runner = self._runner(tmp_dir, FakeExecutor())
        os.makedirs(runner.baseline_dir)
        for name in ("a.png", "b.JPG", "notes.txt"):
            open(os.path.join(runner.baseline_dir, name), "w").close()
        result = await runner.capture_baseline("/Game/Maps/Arena", "FPS.Visual")
        assert result.screenshot_count == 2
        assert result.screenshots == ["a.png", "b.JPG"]

    async def test_compare_per_image_thresholds(self, tmp_dir):
        executor = FakeExecutor()
        runner = self._runner(tmp_dir, executor, threshold=0.05)
        report_dir = os.path.join(runner.artifact_dir, "visual-report")
        os.makedirs(report_dir)
        with open(os.path.join(report_dir, "ComparisonReport.json"), "w") as f:
            json.dump({"comparisons": [
                {"name": "hud.png", "difference": 0.02},
                {"imageName": "sky.png", "pixelDifference": 0.03},
            ]}, f)

        result = await runner.compare("/Game/Maps/Arena", "FPS.Visual", per_image={"sky.png": 0.01})

        assert result.success
        assert result.max_difference == 0.03
        by_name = {d.name: d for d in result.differences}
        assert by_name["hud.png"].passed
        assert not by_name["sky.png"].passed
        assert result.diff_images == [os.path.join(report_dir, "diff_sky.png")]
        assert not any("nullrhi" in a.lower() for a in executor.calls[0]["args"])

    async def test_update_baseline_drops_old_images(self, tmp_dir):
        executor = FakeExecutor()
        runner = self._runner(tmp_dir, executor)
        os.makedirs(runner.baseline_dir)
        open(os.path.join(runner.baseline_dir, "stale.png"), "w").close()

        result = await runner.update_baseline("/Game/Maps/Arena", "FPS.Visual", resolution=(1280, 720))

        assert result.screenshot_count == 0
        assert os.path.isdir(runner.baseline_dir)
        assert "-ResX=1280" in executor.calls[0]["args"]

    async def test_compare_without_report(self, tmp_dir):
        result = await self._runner(tmp_dir, FakeExecutor()).compare("/Game/Maps/Arena", "FPS.Visual")
        assert result.success
        assert result.differences == []


# =============================================================================
# Golden scenario
# =============================================================================

class TestScenario:
    """Tests for the golden gameplay scenario"""

    async def test_run_scenario_passes(self, tmp_dir):
        stdout = "Average FPS: 58\nMinimum FPS: 41\nStuck frames: 0\n"
        fake = FakeExecutor({"RunUnreal": ProcessResult(exit_code=0, stdout=stdout)})
        runner = GoldenScenarioRunner(ENGINE, PROJECT, tmp_dir, uat=_uat(fake))
        config = ScenarioConfig(
            map="/Game/Maps/Arena", duration=5000,
            input_sequence=[InputAction("/Game/Input/IA_Jump", True, 100)],
            assertions=[ScenarioAssertion("no_errors"), ScenarioAssertion("fps_above", threshold=30)],
        )

        result = await runner.run_scenario(config)

        assert result.success
        assert fake.calls[0]["timeout"] == 65000
        input_arg = next(a for a in fake.calls[0]["args"] if a.startswith("-InputSequenceFile="))
        with open(input_arg.split("=", 1)[1]) as f:
            assert json.load(f) == [{"actionPath": "/Game/Input/IA_Jump", "value": True, "duration": 100}]
        assert any(a.name == "input-sequence.json" for a in result.artifacts)

    async def test_failed_assertion_fails_scenario(self, tmp_dir):
        fake = FakeExecutor({"RunUnreal": ProcessResult(exit_code=0, stdout="Minimum FPS: 12\n")})
        runner = GoldenScenarioRunner(ENGINE, PROJECT, tmp_dir, uat=_uat(fake))
        result = await runner.run_scenario(scenario_from_template("idle_test", "/Game/Maps/Arena"))
        assert not result.success
        fps = next(a for a in result.assertions if a.type == "fps_above")
        assert fps.message == "FPS dropped to 12.0 (threshold: 30)"

    def test_metrics_defaults(self):
        metrics = parse_metrics("", 1000)
        assert metrics.avg_fps == 60.0
        assert metrics.error_count == 0
        assert metrics.duration == 1000

    @pytest.mark.parametrize("check,passed", [("READY", True), ("MISSING", False)])
    def test_custom_assertion(self, check, passed):
        results = evaluate_assertions(parse_metrics("READY", 0), [ScenarioAssertion("custom", custom_check=check)],
                                      "READY")
        assert results[0].passed is passed

    def test_unknown_assertion(self):
        result = evaluate_assertions(parse_metrics("", 0), [ScenarioAssertion("teleport")], "")[0]
        assert not result.passed
        assert result.message == "Unknown assertion type: teleport"
