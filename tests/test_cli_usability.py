import json
import subprocess
import sys
from pathlib import Path

from fragflash.codec import FragmentWriter
from fragflash.models import BarcodeFragment
from fragflash.toy_data import make_toy_data


def _run_cli(args: list[str]) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "fragflash"] + args,
        check=False,
        capture_output=True,
        text=True,
    )


def _small_fragment_file(path: Path) -> Path:
    with FragmentWriter(path) as w:
        w.write(BarcodeFragment(chr=0, start=104, end=145, cb=27))
        w.write(BarcodeFragment(chr=1, start=10, end=90, cb=0))
    return path


def test_make_toy_data_cli(tmp_path: Path) -> None:
    cp = _run_cli(["make-toy-data", "--outdir", str(tmp_path / "toy")])
    assert cp.returncode == 0
    summary = json.loads(cp.stdout)
    assert Path(summary["bam"]).exists()
    assert Path(summary["whitelist"]).exists()


def test_filter_stats_only_with_report(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    report_dir = tmp_path / "report"
    cp = _run_cli(
        ["filter", "--bam", toy["bam"], "--stats-only", "--report-dir", str(report_dir), "--no-progress"]
    )
    assert cp.returncode == 0, cp.stderr
    assert "Mitochondrial Reads: 1" in cp.stdout
    assert (report_dir / "report.html").exists()
    assert (report_dir / "plots" / "filter_outcomes.png").exists()
    html = (report_dir / "report.html").read_text()
    assert "fragflash filter report" in html


def test_filter_without_output_fails_cleanly(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(["filter", "--bam", toy["bam"], "--no-progress"])
    assert cp.returncode == 2
    assert "[filter]" in cp.stderr


def test_filter_unknown_mito_name(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    cp = _run_cli(
        ["filter", "--bam", toy["bam"], "--out", str(tmp_path / "x.frag"), "--mito-name", "MT", "--no-progress"]
    )
    assert cp.returncode == 2
    assert "MT" in cp.stderr


def test_correct_requires_policy(tmp_path: Path) -> None:
    frag = _small_fragment_file(tmp_path / "a.frag")
    wl = tmp_path / "wl.txt"
    wl.write_text("A" * 16 + "\n")
    cp = _run_cli(["correct", "--input", str(frag), "--whitelist", str(wl)])
    assert cp.returncode == 2
    assert "--policy" in cp.stderr


def test_missing_input_path() -> None:
    cp = _run_cli(["sort", "--input", "/does/not/exist.frag"])
    assert cp.returncode == 2
    assert "Path does not exist" in cp.stderr


def test_text_modes(tmp_path: Path) -> None:
    frag = _small_fragment_file(tmp_path / "a.frag")

    cp = _run_cli(["text", "--input", str(frag), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    assert (tmp_path / "a.text.bed").read_text().splitlines() == ["0\t104\t145\t27", "1\t10\t90\t0"]

    out = tmp_path / "b.bed"
    cp = _run_cli(
        ["text", "--input", str(frag), "--mode", "barcode", "--barcode-length", "4", "--out", str(out), "--no-progress"]
    )
    assert cp.returncode == 0, cp.stderr
    assert out.read_text().splitlines() == ["0\t104\t145\tACGT", "1\t10\t90\tAAAA"]

    out = tmp_path / "c.frag"
    cp = _run_cli(["text", "--input", str(frag), "--mode", "binary", "--out", str(out), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    assert out.read_bytes() == frag.read_bytes()


def test_text_with_chromosome_names(tmp_path: Path) -> None:
    toy = make_toy_data(outdir=tmp_path / "toy")
    frag = _small_fragment_file(tmp_path / "a.frag")
    cp = _run_cli(["text", "--input", str(frag), "--bam", toy["bam"], "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    assert (tmp_path / "a.text.bed").read_text().splitlines()[1].startswith("chr2\t")


def test_stats_and_corrupt_file(tmp_path: Path) -> None:
    frag = _small_fragment_file(tmp_path / "a.frag")
    cp = _run_cli(["stats", "--input", str(frag), "--no-progress"])
    assert cp.returncode == 0, cp.stderr
    stats = json.loads(cp.stdout)
    assert stats["records"] == 2
    assert stats["records_per_chromosome"] == {"0": 1, "1": 1}

    with open(frag, "ab") as fh:
        fh.write(b"\x00" * 3)
    cp = _run_cli(["stats", "--input", str(frag), "--no-progress"])
    assert cp.returncode == 2
    assert "truncated" in cp.stderr


def test_text_refuses_to_overwrite_input(tmp_path: Path) -> None:
    frag = _small_fragment_file(tmp_path / "a.frag")
    before = frag.read_bytes()
    cp = _run_cli(["text", "--input", str(frag), "--mode", "binary", "--out", str(frag), "--no-progress"])
    assert cp.returncode == 2
    assert "overwrite" in cp.stderr
    assert frag.read_bytes() == before
