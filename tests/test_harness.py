import json
import subprocess
from pathlib import Path
from unittest import mock

import pytest
from jsonschema import Draft7Validator

from gridbench.harness import (
    PACKAGE,
    TEMPLATE_BENCH_NAME,
    Benchmark,
    BenchmarkOutput,
    BenchmarkRunner,
    ExpectedConfig,
    ExpectedGlob,
    ExpectedRun,
    GroupConfig,
    Metadata,
    RunConfig,
    VerificationError,
    filter_stdout,
    load_bench_config,
    load_expected_runs,
    main,
)


def _completed(returncode=0, stdout=b"", stderr=b""):
    return subprocess.CompletedProcess(
        args=[], returncode=returncode, stdout=stdout, stderr=stderr
    )


def _meta(tmp_path):
    benches = tmp_path / "benches"
    benches.mkdir(exist_ok=True)
    return Metadata(tmp_path, tmp_path / "target", benches)


# filter_stdout


def test_filter_ram_hits_masks_diff_and_drops_factor():
    line = "  RAM Hits:" + " " * 13 + "179|209" + " " * 13 + "(-14.3541%) [-1.16760x]"
    expected = "  RAM Hits:" + " " * 13 + "   |   " + " " * 13 + "(         )\n"
    assert filter_stdout(line.encode()) == expected


def test_filter_ram_hits_without_baseline_keeps_stars():
    line = "  RAM Hits:" + " " * 5 + "179|N/A" + " " * 5 + "(*********)"
    expected = "  RAM Hits:" + " " * 5 + "   |N/A" + " " * 5 + "(*********)\n"
    assert filter_stdout(line.encode()) == expected


def test_filter_estimated_cycles_without_diff():
    assert filter_stdout(b"  Estimated Cycles: 10|N/A") == "  Estimated Cycles:   |N/A\n"


def test_filter_generic_percent_and_factor():
    line = "  Instructions:     1234|1200     (+2.83333%) [+1.02833x]"
    expected = (
        "  Instructions:     "
        + " " * 4
        + "|"
        + " " * 4
        + "     "
        + "(+"
        + " " * 7
        + "%)"
        + " "
        + "[+"
        + " " * 7
        + "x]\n"
    )
    assert filter_stdout(line) == expected


def test_filter_keeps_non_numeric_diff():
    line = "  Instructions:  1234|1234  (No Change)"
    expected = "  Instructions:  " + " " * 4 + "|" + " " * 4 + "  (No Change)\n"
    assert filter_stdout(line) == expected


def test_filter_leaves_other_lines_and_strips_carriage_return():
    text = b"test_bench::bench_group::bench_bubble_sort worst_case:setup(20)\r\n  Instructions:\n"
    assert filter_stdout(text) == (
        "test_bench::bench_group::bench_bubble_sort worst_case:setup(20)\n  Instructions:\n"
    )


@pytest.mark.parametrize(
    "line",
    [
        "  Instructions:     1234|1200     (+2.83333%) [+1.02833x]",
        "  L1 Hits:          99|N/A        (*********)",
        "  Total read+write: 5|5           (No Change)",
    ],
)
def test_filter_preserves_length_of_generic_lines(line):
    result = filter_stdout(line)
    assert len(result) == len(line) + 1
    assert result.endswith("\n")


def test_filter_empty_input():
    assert filter_stdout(b"") == ""


# configuration loading


def test_load_bench_config(tmp_path):
    path = tmp_path / "test_lib.conf.yml"
    path.write_text(
        "template: test_lib.rs.j2\n"
        "groups:\n"
        "  - runs:\n"
        "      - args: ['--save-baseline=foo']\n"
        "        template_data: {array_length: 3}\n"
        "        expected:\n"
        "          stdout: out.stdout\n"
        "      - {}\n"
    )
    config = load_bench_config(path)
    assert config.template == Path("test_lib.rs.j2")
    first, second = config.groups[0].runs
    assert first.args == ["--save-baseline=foo"]
    assert first.template_data == {"array_length": 3}
    assert first.expected == ExpectedConfig(stdout=Path("out.stdout"))
    assert first.captures_output
    assert second == RunConfig()
    assert not second.captures_output


def test_load_bench_config_missing_groups(tmp_path):
    path = tmp_path / "broken.conf.yml"
    path.write_text("template: x\n")
    with pytest.raises(ValueError, match="Failed to deserialize"):
        load_bench_config(path)


def test_load_expected_runs(tmp_path):
    path = tmp_path / "expected.yml"
    path.write_text(
        "data:\n"
        "  - group: my_group\n"
        "    function: my_func\n"
        "    id: case_1\n"
        "    expected:\n"
        "      files: [summary.json]\n"
        "      globs:\n"
        "        - pattern: callgrind.*.out\n"
        "          count: 2\n"
    )
    (run,) = load_expected_runs(path)
    assert run.group == "my_group"
    assert run.id == "case_1"
    assert run.files == [Path("summary.json")]
    assert run.globs == [ExpectedGlob("callgrind.*.out", 2)]


def test_expected_glob_rejects_negative_count():
    with pytest.raises(ValueError):
        ExpectedGlob.from_dict({"pattern": "*", "count": -1})


# ExpectedRun.verify


def _bench_dir(tmp_path, name="func.id"):
    directory = tmp_path / "group" / name
    directory.mkdir(parents=True)
    return directory


def test_expected_run_verify_with_template(tmp_path):
    directory = _bench_dir(tmp_path, "bench_target.id")
    (directory / "a.out").write_text("")
    run = ExpectedRun(
        group="group", function="bench_{{ suffix }}", id="id", files=[Path("a.out")]
    )
    run.verify(tmp_path, None, {"suffix": "target"})
    # A missing directory for a different rendering is reported.
    with pytest.raises(VerificationError, match="to exist"):
        run.verify(tmp_path, None, {"suffix": "other"})


def test_expected_run_missing_file(tmp_path):
    _bench_dir(tmp_path)
    run = ExpectedRun(group="group", function="func", id="id", files=[Path("a.out")])
    with pytest.raises(VerificationError, match="does not exist"):
        run.verify(tmp_path, None)


def test_expected_run_unexpected_file(tmp_path):
    directory = _bench_dir(tmp_path)
    (directory / "a.out").write_text("")
    (directory / "extra").write_text("")
    run = ExpectedRun(group="group", function="func", id="id", files=[Path("a.out")])
    with pytest.raises(VerificationError, match="no other files"):
        run.verify(tmp_path, None)


def test_expected_run_glob_count(tmp_path):
    directory = _bench_dir(tmp_path, "func")
    for name in ("callgrind.1.out", "callgrind.2.out"):
        (directory / name).write_text("")
    good = ExpectedRun(group="group", function="func", globs=[ExpectedGlob("callgrind.*", 2)])
    good.verify(tmp_path, None)
    bad = ExpectedRun(group="group", function="func", globs=[ExpectedGlob("callgrind.*", 3)])
    with pytest.raises(VerificationError, match="but found 2 files"):
        bad.verify(tmp_path, None)


def test_expected_run_reports_invalid_summary(tmp_path, capsys):
    directory = _bench_dir(tmp_path, "func")
    (directory / "summary.json").write_text(json.dumps({}))
    validator = Draft7Validator({"type": "object", "required": ["version"]})
    run = ExpectedRun(group="group", function="func", files=[Path("summary.json")])
    run.verify(tmp_path, validator)
    assert "Validation error" in capsys.readouterr().err


# BenchmarkOutput.verify


def test_benchmark_output_verify_filters_stdout(tmp_path):
    meta = _meta(tmp_path)
    (meta.benches_dir / "run.stdout").write_text(filter_stdout("  Instructions: 12|12\n"))
    (meta.benches_dir / "run.stderr").write_text("warn\n")
    output = BenchmarkOutput(stdout=b"  Instructions: 34|34\n", stderr=b"warn\n")
    output.verify(meta, ExpectedConfig(stdout=Path("run.stdout"), stderr=Path("run.stderr")))
    with pytest.raises(VerificationError, match="stderr"):
        BenchmarkOutput(b"", b"other\n").verify(meta, ExpectedConfig(stderr=Path("run.stderr")))


def test_benchmark_output_stdout_mismatch(tmp_path):
    meta = _meta(tmp_path)
    (meta.benches_dir / "run.stdout").write_text("expected\n")
    with pytest.raises(VerificationError, match="stdout"):
        BenchmarkOutput(b"actual\n", b"").verify(meta, ExpectedConfig(stdout=Path("run.stdout")))


def test_run_config_verify_checks_files(tmp_path):
    meta = _meta(tmp_path)
    (meta.benches_dir / "expected.yml").write_text(
        "data:\n  - group: g\n    function: f\n    expected: {files: [x]}\n"
    )
    dest = tmp_path / "dest"
    (dest / "g" / "f").mkdir(parents=True)
    run = RunConfig(expected=ExpectedConfig(files=Path("expected.yml")))
    with pytest.raises(VerificationError, match="does not exist"):
        run.verify(meta, None, None, dest)
    (dest / "g" / "f" / "x").write_text("")
    run.verify(meta, None, None, dest)
    assert (dest / "g" / "f" / "x").exists()


# Metadata and Benchmark


def test_metadata_files(tmp_path):
    meta = _meta(tmp_path)
    assert meta.get_file("a.yml") == meta.benches_dir / "a.yml"
    assert meta.get_bench_file("test_bench") == meta.benches_dir / "test_bench.rs"


def test_benchmark_from_path(tmp_path):
    plain = tmp_path / "plain.conf.yml"
    plain.write_text("groups: []\n")
    templated = tmp_path / "templ.conf.yml"
    templated.write_text("template: t.j2\ngroups: []\n")
    target = tmp_path / "target"

    bench = Benchmark.from_path(plain, target)
    assert (bench.name, bench.bench_name) == ("plain", "plain")
    assert bench.dest_dir.parent == target / "gridbench" / PACKAGE

    bench = Benchmark.from_path(templated, target)
    assert (bench.name, bench.bench_name) == ("templ", TEMPLATE_BENCH_NAME)
    assert bench.dest_dir.name == TEMPLATE_BENCH_NAME


def test_benchmark_from_path_requires_suffix(tmp_path):
    path = tmp_path / "plain.yml"
    path.write_text("groups: []\n")
    with pytest.raises(ValueError):
        Benchmark.from_path(path, tmp_path)


def test_benchmark_clean(tmp_path):
    bench = Benchmark("b", "b", GroupConfig and load_bench_config_stub(tmp_path), tmp_path / "d")
    (bench.dest_dir / "sub").mkdir(parents=True)
    bench.clean()
    assert not bench.dest_dir.exists()


def load_bench_config_stub(tmp_path):
    path = tmp_path / "stub.conf.yml"
    path.write_text("groups: []\n")
    return load_bench_config(path)


def test_run_bench_command(tmp_path):
    bench = Benchmark("b", "b", load_bench_config_stub(tmp_path), tmp_path / "d")
    with mock.patch(
        "gridbench.harness.subprocess.run", return_value=_completed(stdout=b"out", stderr=b"err")
    ) as run:
        output = bench.run_bench(["--x"], True)
    command = run.call_args.args[0]
    assert command[1:] == ["bench", "--package", PACKAGE, "--bench", "b", "--", "--x"]
    assert run.call_args.kwargs["env"]["GRIDBENCH_COLOR"] == "never"
    assert output == BenchmarkOutput(b"out", b"err")


def test_run_bench_without_capture_and_failure(tmp_path):
    bench = Benchmark("b", "b", load_bench_config_stub(tmp_path), tmp_path / "d")
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed()) as run:
        assert bench.run_bench([], False) is None
    assert "--" not in run.call_args.args[0]
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed(returncode=101)):
        with pytest.raises(VerificationError, match="Expected run to be successful"):
            bench.run_bench([], False)


def test_run_template_renders_bench_file(tmp_path):
    meta = _meta(tmp_path)
    (meta.benches_dir / "t.j2").write_text("const N: usize = {{ n }};")
    bench = Benchmark("templ", TEMPLATE_BENCH_NAME, load_bench_config_stub(tmp_path), tmp_path / "d")
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed()):
        bench.run_template(Path("t.j2"), [], {"n": 7}, meta, False)
    assert meta.get_bench_file(TEMPLATE_BENCH_NAME).read_text() == "const N: usize = 7;"


def test_benchmark_run_verifies_output(tmp_path):
    meta = _meta(tmp_path)
    (meta.benches_dir / "r.stdout").write_text("hello\n")
    bench = Benchmark("b", "b", load_bench_config_stub(tmp_path), tmp_path / "d")
    group = GroupConfig([RunConfig(expected=ExpectedConfig(stdout=Path("r.stdout")))])
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed(stdout=b"hello\n")):
        bench.run(group, meta, None)
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed(stdout=b"bye\n")):
        with pytest.raises(VerificationError):
            bench.run(group, meta, None)


def test_metadata_discover(tmp_path, monkeypatch):
    benches = tmp_path / "pkg" / "benches"
    benches.mkdir(parents=True)
    (benches / "one.conf.yml").write_text("groups: []\n")
    (benches / "two.conf.yml").write_text("groups: []\n")
    monkeypatch.setenv("CARGO_MANIFEST_DIR", str(tmp_path / "pkg"))
    cargo_output = json.dumps(
        {"workspace_root": str(tmp_path), "target_directory": str(tmp_path / "target")}
    )
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed(stdout=cargo_output)):
        meta = Metadata.discover([])
        selected = Metadata.discover(["two"])
    assert [b.name for b in meta.benchmarks] == ["one", "two"]
    assert [b.name for b in selected.benchmarks] == ["two"]
    assert meta.benches_dir == benches


def test_runner_sets_environment_and_builds(tmp_path, monkeypatch):
    monkeypatch.delenv("GRIDBENCH_SAVE_SUMMARY", raising=False)
    monkeypatch.delenv("GRIDBENCH_RUNNER", raising=False)
    schema_dir = tmp_path / "gridbench-runner" / "schemas"
    schema_dir.mkdir(parents=True)
    (schema_dir / "summary.v2.schema.json").write_text(json.dumps({"type": "object"}))
    runner = BenchmarkRunner(_meta(tmp_path))
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed()) as run:
        runner.run()
    import os

    assert os.environ["GRIDBENCH_SAVE_SUMMARY"] == "json"
    assert "--release" in run.call_args.args[0]
    with mock.patch("gridbench.harness.subprocess.run", return_value=_completed(returncode=1)):
        with pytest.raises(VerificationError):
            runner.run()


def test_main_reports_failure(tmp_path):
    with mock.patch(
        "gridbench.harness.subprocess.run",
        side_effect=subprocess.CalledProcessError(1, ["cargo"]),
    ):
        assert main([]) == 1