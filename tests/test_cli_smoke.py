import json
import subprocess
import sys
from pathlib import Path

from fragflash.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "fragflash"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_help() -> None:
    cp = subprocess.run(
        [sys.executable, "-m", "fragflash", "--help"],
        check=True,
        capture_output=True,
        text=True,
    )
    assert "fragflash" in cp.stdout.lower()
    for cmd in ["filter", "correct", "sort", "group", "callpeak", "count", "text", "stats"]:
        assert cmd in cp.stdout


def test_full_pipeline_on_toy_data(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    work = tmp_path / "work"
    work.mkdir()
    frag = work / "toy.frag"

    cp = _run_cli(["filter", "--bam", toy["bam"], "--out", str(frag), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    assert "STATS: Total Reads: 45" in cp.stdout
    summary = json.loads((work / "toy.frag.summary.json").read_text())
    assert summary["stats"]["fragments_written"] == 40

    cp = _run_cli(["sort", "--input", str(frag), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    sorted_frag = Path(cp.stdout.strip())
    assert sorted_frag == work / "toy.sorted.frag"

    cp = _run_cli(
        [
            "correct",
            "--input",
            str(sorted_frag),
            "--whitelist",
            toy["whitelist"],
            "--policy",
            "edit1",
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    corrected = Path(cp.stdout.strip())
    correction = json.loads(corrected.with_name(corrected.name + ".summary.json").read_text())
    assert correction["accepted"] == 40
    assert correction["corrected"] == 1

    cp = _run_cli(["group", "--input", str(corrected), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    grouped = Path(cp.stdout.strip())

    cp = _run_cli(
        ["group", "--input", str(corrected), "--all-barcodes", "--out", str(work / "cells.frag"), "--no-progress"]
    )
    assert cp.returncode == 0, cp.stderr

    cp = _run_cli(["callpeak", "--input", str(grouped), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    peaks = Path(cp.stdout.strip())
    peak_stats = json.loads(peaks.with_name(peaks.name + ".summary.json").read_text())
    assert peak_stats["total_peaks"] == 1
    assert peak_stats["noise_regions"] == 1

    outdir = work / "matrix"
    cp = _run_cli(
        [
            "count",
            "--peaks",
            str(peaks),
            "--fragments",
            str(work / "cells.frag"),
            "--outdir",
            str(outdir),
            "--bam",
            toy["bam"],
            "--no-progress",
        ]
    )
    assert cp.returncode == 0, cp.stderr
    assert (outdir / "counts.mtx").exists()
    rows = (outdir / "counts_rows.txt").read_text().splitlines()
    cols = (outdir / "counts_cols.txt").read_text().splitlines()
    assert len(rows) == 1 and rows[0].startswith("chr1_")
    assert sorted(cols) == sorted(toy["barcodes"].split(","))
