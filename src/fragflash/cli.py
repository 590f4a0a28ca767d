from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from . import __version__
from .classifier import filter_bam, reference_names
from .config import (
    CB_LENGTH,
    MATE_MAX_DISTANCE,
    MATE_MIN_DISTANCE,
    MAX_SHOULDER_RATIO,
    MIN_CELLS_PER_PEAK,
    MIN_MAPQ,
    MIN_PILEUP,
    MIN_REGION_SUPPORT,
    MITO_NAME,
    WINDOW_SIZE,
    BarcodeConfig,
    ClassifierConfig,
    CountMatrixConfig,
    PeakCallerConfig,
)
from .correct import BarcodeCorrector, CorrectionPolicy, correct_fragments, load_whitelist
from .count import count_matrix
from .errors import FragFlashError
from .group import group_file
from .peaks import call_peaks
from .plotting import plot_chimeric_breakdown, plot_filter_outcomes
from .report import render_filter_report
from .sorter import sort_fragments
from .text import convert_to_text, fragment_stats
from .toy_data import make_toy_data
from .utils import ensure_outdir, write_json


def _setup_logging(verbosity: int, *, logfile: Optional[Path] = None) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    log_fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    logging.basicConfig(level=level, format=log_fmt, stream=sys.stderr)

    if logfile is not None:
        logfile.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(logfile)
        fh.setLevel(level)
        fh.setFormatter(logging.Formatter(log_fmt))
        logging.getLogger().addHandler(fh)


def _path_exists(p: str) -> str:
    if not Path(p).exists():
        raise argparse.ArgumentTypeError(f"Path does not exist: {p}")
    return p


def _handle_error(err: Exception, *, stage: str) -> int:
    msg = f"[{stage}] {err.__class__.__name__}: {err}"
    if not isinstance(err, FragFlashError):
        logging.getLogger("fragflash").debug("Unexpected error", exc_info=err)
    sys.stderr.write(msg + "\n")
    return 2


def _common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--no-progress", action="store_true", help="Disable progress bars.")
    p.add_argument("--log-file", default=None, help="Also write log messages to this file.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v/-vv).")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="fragflash",
        description=(
            "fragflash: fast fragment helpers for single-cell ATAC / CUT&Tag data. "
            "BAM -> binary fragments -> sorted -> whitelist-corrected -> grouped -> peaks -> count matrix."
        ),
    )
    p.add_argument("--version", action="version", version=f"fragflash {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # -----------------
    # filter
    # -----------------
    f = sub.add_parser("filter", help="Filter a name-grouped BAM into a binary fragment file.")
    f.add_argument("--bam", required=True, type=_path_exists, help="Input BAM, grouped by read name.")
    f.add_argument("--out", default=None, help="Output binary fragment file (required unless --stats-only).")
    f.add_argument(
        "--barcode-source",
        choices=["name", "tag"],
        default="name",
        help="Take the barcode from the read-name suffix or from the CB tag (10x BAMs).",
    )
    f.add_argument("--stats-only", action="store_true", help="Only report filter statistics.")
    f.add_argument(
        "--mito-name",
        default=MITO_NAME,
        help="Mitochondrial contig name; pass an empty string to keep all contigs.",
    )
    f.add_argument("--min-mapq", type=int, default=MIN_MAPQ, help="Minimum MAPQ of both mates.")
    f.add_argument(
        "--mate-min-distance", type=int, default=MATE_MIN_DISTANCE, help="Minimum soft-clip-adjusted mate distance."
    )
    f.add_argument(
        "--mate-max-distance", type=int, default=MATE_MAX_DISTANCE, help="Maximum mate start distance."
    )
    f.add_argument("--barcode-length", type=int, default=CB_LENGTH, help="Cell barcode length.")
    f.add_argument("--threads", type=int, default=1, help="BAM decompression threads.")
    f.add_argument("--report-dir", default=None, help="Write an HTML report with plots into this directory.")
    _common(f)

    # -----------------
    # correct
    # -----------------
    c = sub.add_parser("correct", help="Keep fragments whose barcode passes the whitelist policy.")
    c.add_argument("--input", required=True, type=_path_exists, help="Binary fragment file.")
    c.add_argument("--whitelist", required=True, type=_path_exists, help="Whitelist (.txt or .txt.gz).")
    c.add_argument(
        "--policy",
        required=True,
        choices=[policy.value for policy in CorrectionPolicy],
        help="exact: exact match; complement: exact or bitwise complement; edit1: exact or one substitution.",
    )
    c.add_argument(
        "--whitelist-reverse",
        action="store_true",
        help="Whitelist is in reverse-complement orientation relative to the reads.",
    )
    c.add_argument("--barcode-length", type=int, default=CB_LENGTH, help="Cell barcode length.")
    c.add_argument("--out", default=None, help="Output file (default: <input>.corrected).")
    _common(c)

    # -----------------
    # sort
    # -----------------
    s = sub.add_parser("sort", help="Sort a fragment file by chromosome, then start.")
    s.add_argument("--input", required=True, type=_path_exists, help="Binary fragment file.")
    s.add_argument("--out", default=None, help="Output file (default: <input>.sorted).")
    _common(s)

    # -----------------
    # group
    # -----------------
    g = sub.add_parser("group", help="Collapse fragments sharing (chr, start, end).")
    g.add_argument("--input", required=True, type=_path_exists, help="Sorted binary fragment file.")
    g.add_argument(
        "--all-barcodes",
        action="store_true",
        help="Write one record per distinct barcode instead of a support count.",
    )
    g.add_argument("--out", default=None, help="Output file (default: <input>.grouped).")
    _common(g)

    # -----------------
    # callpeak
    # -----------------
    k = sub.add_parser("callpeak", help="Call peaks from a count-mode grouped file.")
    k.add_argument("--input", required=True, type=_path_exists, help="Grouped (count mode) fragment file.")
    k.add_argument("--out", default=None, help="Output file (default: <input>.peaks).")
    k.add_argument(
        "--min-region-support", type=int, default=MIN_REGION_SUPPORT, help="Discard regions below this support."
    )
    k.add_argument("--min-pileup", type=int, default=MIN_PILEUP, help="Lowest pileup value to seed a peak.")
    k.add_argument("--window-size", type=int, default=WINDOW_SIZE, help="Peak window size in bp.")
    k.add_argument(
        "--max-shoulder-ratio",
        type=float,
        default=MAX_SHOULDER_RATIO,
        help="Maximum fraction of window mass allowed in the outer eighths.",
    )
    _common(k)

    # -----------------
    # count
    # -----------------
    m = sub.add_parser("count", help="Build a peak x barcode count matrix.")
    m.add_argument("--peaks", required=True, type=_path_exists, help="Peak file from callpeak.")
    m.add_argument(
        "--fragments", required=True, type=_path_exists, help="Grouped file from group --all-barcodes."
    )
    m.add_argument("--outdir", required=True, help="Directory for counts.mtx and label files.")
    m.add_argument("--bam", default=None, type=_path_exists, help="BAM whose header names the chromosomes.")
    m.add_argument("--min-cells", type=int, default=MIN_CELLS_PER_PEAK, help="Minimum distinct barcodes per peak.")
    m.add_argument("--barcode-length", type=int, default=CB_LENGTH, help="Cell barcode length.")
    _common(m)

    # -----------------
    # text
    # -----------------
    t = sub.add_parser("text", help="Convert a binary fragment file to BED-like text.")
    t.add_argument("--input", required=True, type=_path_exists, help="Binary fragment file.")
    t.add_argument("--out", default=None, help="Output file (default: <input>.text.bed).")
    t.add_argument(
        "--mode",
        choices=["numeric", "barcode", "binary"],
        default="numeric",
        help="Last column as integer, as decoded barcode, or raw binary passthrough.",
    )
    t.add_argument("--bam", default=None, type=_path_exists, help="BAM whose header names the chromosomes.")
    t.add_argument("--barcode-length", type=int, default=CB_LENGTH, help="Cell barcode length.")
    _common(t)

    # -----------------
    # stats
    # -----------------
    st = sub.add_parser("stats", help="Count records of a fragment file.")
    st.add_argument("--input", required=True, type=_path_exists, help="Binary fragment file.")
    _common(st)

    # -----------------
    # make-toy-data
    # -----------------
    y = sub.add_parser("make-toy-data", help="Generate a tiny BAM and whitelist for demos/tests.")
    y.add_argument("--outdir", required=True, help="Output directory for toy data.")

    return p


# -----------------
# Command handlers
# -----------------


def _start(args: argparse.Namespace) -> None:
    _setup_logging(args.verbose, logfile=Path(args.log_file) if args.log_file else None)
    logging.getLogger("fragflash").info("fragflash %s", __version__)


def cmd_filter(args: argparse.Namespace) -> int:
    _start(args)
    try:
        config = ClassifierConfig(
            min_mapq=int(args.min_mapq),
            mate_min_distance=int(args.mate_min_distance),
            mate_max_distance=int(args.mate_max_distance),
            mito_name=args.mito_name or None,
            barcode=BarcodeConfig(length=int(args.barcode_length)),
        )
        stats = filter_bam(
            bam_path=args.bam,
            out_path=args.out,
            config=config,
            barcode_source=args.barcode_source,
            stats_only=bool(args.stats_only),
            threads=int(args.threads),
            progress_bar=not args.no_progress,
        )

        run = {
            "bam_path": str(args.bam),
            "out_path": str(args.out) if args.out else None,
            "barcode_source": args.barcode_source,
            "stats_only": bool(args.stats_only),
            "config": {k: v for k, v in asdict(config).items() if k != "barcode"},
            "stats": stats.to_dict(),
        }
        if args.out:
            write_json(Path(args.out).with_name(Path(args.out).name + ".summary.json"), run)

        if args.report_dir:
            report_dir = ensure_outdir(args.report_dir)
            plots_dir = report_dir / "plots"
            plot_filter_outcomes(stats=run["stats"], out_png=plots_dir / "filter_outcomes.png")
            plot_chimeric_breakdown(stats=run["stats"], out_png=plots_dir / "chimeric.png")
            write_json(report_dir / "summary.json", run)
            render_filter_report(
                outdir=report_dir,
                version=__version__,
                run=run,
                plots={
                    "filter_outcomes": str(Path("plots") / "filter_outcomes.png"),
                    "chimeric": str(Path("plots") / "chimeric.png"),
                },
            )

        print("\n".join(stats.summary_lines()))
        return 0
    except Exception as e:
        return _handle_error(e, stage="filter")


def cmd_correct(args: argparse.Namespace) -> int:
    _start(args)
    try:
        barcode = BarcodeConfig(length=int(args.barcode_length))
        whitelist = load_whitelist(args.whitelist, barcode=barcode, forward=not args.whitelist_reverse)
        corrector = BarcodeCorrector(whitelist=whitelist, policy=CorrectionPolicy(args.policy), barcode=barcode)
        out = correct_fragments(
            in_path=args.input,
            out_path=args.out,
            corrector=corrector,
            progress_bar=not args.no_progress,
        )
        write_json(out.with_name(out.name + ".summary.json"), corrector.stats.to_dict())
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e, stage="correct")


def cmd_sort(args: argparse.Namespace) -> int:
    _start(args)
    try:
        out = sort_fragments(args.input, args.out, progress_bar=not args.no_progress)
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e, stage="sort")


def cmd_group(args: argparse.Namespace) -> int:
    _start(args)
    try:
        out, _ = group_file(
            in_path=args.input,
            out_path=args.out,
            mode="all-barcodes" if args.all_barcodes else "count",
            progress_bar=not args.no_progress,
        )
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e, stage="group")


def cmd_callpeak(args: argparse.Namespace) -> int:
    _start(args)
    try:
        config = PeakCallerConfig(
            min_region_support=int(args.min_region_support),
            min_pileup=int(args.min_pileup),
            window_size=int(args.window_size),
            max_shoulder_ratio=float(args.max_shoulder_ratio),
        )
        out, stats = call_peaks(
            in_path=args.input, out_path=args.out, config=config, progress_bar=not args.no_progress
        )
        write_json(out.with_name(out.name + ".summary.json"), stats.to_dict())
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e, stage="callpeak")


def cmd_count(args: argparse.Namespace) -> int:
    _start(args)
    try:
        config = CountMatrixConfig(
            min_cells=int(args.min_cells), barcode=BarcodeConfig(length=int(args.barcode_length))
        )
        chrom_names = reference_names(args.bam) if args.bam else None
        paths, stats = count_matrix(
            peaks_path=args.peaks,
            fragments_path=args.fragments,
            outdir=args.outdir,
            config=config,
            chrom_names=chrom_names,
            progress_bar=not args.no_progress,
        )
        write_json(Path(args.outdir) / "count_summary.json", asdict(stats))
        print(str(paths["mtx"]))
        return 0
    except Exception as e:
        return _handle_error(e, stage="count")


def cmd_text(args: argparse.Namespace) -> int:
    _start(args)
    try:
        chrom_names = reference_names(args.bam) if args.bam else None
        out = convert_to_text(
            in_path=args.input,
            out_path=args.out,
            mode=args.mode,
            chrom_names=chrom_names,
            barcode_length=int(args.barcode_length),
            progress_bar=not args.no_progress,
        )
        print(str(out))
        return 0
    except Exception as e:
        return _handle_error(e, stage="text")


def cmd_stats(args: argparse.Namespace) -> int:
    _start(args)
    try:
        print(json.dumps(fragment_stats(args.input, progress_bar=not args.no_progress), indent=2))
        return 0
    except Exception as e:
        return _handle_error(e, stage="stats")


def cmd_make_toy_data(args: argparse.Namespace) -> int:
    outdir = Path(args.outdir).expanduser().resolve()
    summary = make_toy_data(outdir=outdir)
    print(json.dumps(summary, indent=2))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    handlers = {
        "filter": cmd_filter,
        "correct": cmd_correct,
        "sort": cmd_sort,
        "group": cmd_group,
        "callpeak": cmd_callpeak,
        "count": cmd_count,
        "text": cmd_text,
        "stats": cmd_stats,
        "make-toy-data": cmd_make_toy_data,
    }
    handler = handlers.get(args.cmd)
    if handler is None:
        parser.error(f"Unknown command: {args.cmd}")
        return 2
    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
