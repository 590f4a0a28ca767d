from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

from .utils import percent

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>fragflash filter report</title>
  <style>
    body { font-family: "DejaVu Sans", Verdana, sans-serif; margin: 2em auto; max-width: 1100px; color: #222; }
    code { font-family: monospace; background: #eef1f4; padding: 1px 3px; }
    h2 { border-bottom: 2px solid #4c72b0; padding-bottom: 4px; }
    table { border-collapse: collapse; margin: 0.5em 0 1em 0; min-width: 420px; }
    th, td { border-bottom: 1px solid #ccd; padding: 4px 10px; }
    th { text-align: left; font-weight: 600; }
    td.num { text-align: right; font-variant-numeric: tabular-nums; }
    tr.total td { font-weight: 600; background: #eef1f4; }
    .panels { display: flex; flex-wrap: wrap; gap: 1.5em; }
    .panel { flex: 1 1 480px; }
    .meta { color: #777; font-size: 0.85em; }
    img { width: 100%; }
  </style>
</head>
<body>

<h1>fragflash filter report</h1>
<p class="meta">fragflash {{ version }}, generated {{ generated_at }}</p>

<h2>Run</h2>
<div class="panels">
  <div class="panel">
    <table>
      <tr><th>Alignments</th><td><code>{{ bam_path }}</code></td></tr>
      <tr><th>Fragment file</th><td><code>{{ out_path or "(not written)" }}</code></td></tr>
      <tr><th>Barcode taken from</th><td>{{ "read name suffix" if barcode_source == "name" else "CB tag" }}</td></tr>
      <tr><th>Stats only</th><td>{{ "yes" if stats_only else "no" }}</td></tr>
    </table>
  </div>
  <div class="panel">
    <table>
      <tr><th>Parameter</th><th>Value</th></tr>
      {% for key, value in config.items() %}
      <tr><td>{{ key }}</td><td class="num">{{ value }}</td></tr>
      {% endfor %}
    </table>
  </div>
</div>

<h2>Read groups</h2>
<table>
  <tr><th>Outcome</th><th>Groups</th><th>%</th></tr>
  {% for label, key in rows %}
  <tr{% if loop.first %} class="total"{% endif %}><td>{{ label }}</td><td class="num">{{ "{:,}".format(stats[key]) }}</td><td class="num">{{ "%.2f"|format(percents[key]) }}</td></tr>
  {% endfor %}
</table>

<div class="panels">
  <div class="panel">
    <h2>Filter outcomes</h2>
    <img src="{{ plots.filter_outcomes }}" alt="filter outcomes">
  </div>
  <div class="panel">
    <h2>Chimeric pairs</h2>
    <img src="{{ plots.chimeric }}" alt="chimeric breakdown">
  </div>
</div>

<h2>Notes</h2>
<ul>
  <li>Each read group is counted under the first filter it fails; later filters never see it.</li>
  <li>Orphans are groups where only some records are unmapped.</li>
  <li>"Too close" pairs overlap or sit closer than the minimum mate distance once soft clips are restored.</li>
</ul>

</body>
</html>"""
)

_ROWS = [
    ("Total read groups", "total_reads"),
    ("Passed", "num_passed"),
    ("Unmapped", "unmap_skip"),
    ("Unmapped orphan", "unmap_orphan"),
    ("Multi-mapping", "mm_reads"),
    ("Mitochondrial", "mito_skip"),
    ("Low MAPQ", "mapq_skip"),
    ("Unpaired", "unpaired_skip"),
    ("Chimeric (all)", "num_chimeric"),
    ("Chimeric: different contigs", "chimeric_tids"),
    ("Chimeric: strand", "chimeric_strand"),
    ("Chimeric: too far", "chimeric_max_distance"),
    ("Chimeric: too close", "chimeric_min_distance"),
    ("Missing barcode tag", "cb_skip"),
    ("Fragments written", "fragments_written"),
]


def render_filter_report(
    *,
    outdir: str | Path,
    version: str,
    run: Dict[str, Any],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    stats: Dict[str, int] = run.get("stats", {})
    total = int(stats.get("total_reads", 0))
    percents = {key: percent(int(stats.get(key, 0)), total) for _, key in _ROWS}

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        bam_path=run.get("bam_path"),
        out_path=run.get("out_path"),
        barcode_source=run.get("barcode_source"),
        stats_only=run.get("stats_only"),
        config=run.get("config", {}),
        rows=_ROWS,
        stats={key: int(stats.get(key, 0)) for _, key in _ROWS},
        percents=percents,
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Report written: %s", out_path)
    return out_path
