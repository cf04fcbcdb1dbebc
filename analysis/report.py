"""Self-contained HTML report of posterior tables.

A report is an ordered list of sections rendered into one HTML page with a
linked table of contents. There are no figures: posterior summaries, fit
diagnostics, and full-minus-reduced differences are all tables.

  - TableSection wraps a great_tables rendering (see make_gt()).
  - TextSection wraps a short HTML block, e.g. "nothing to compare".

Rows can be highlighted, which is how failed fits and parameters whose
difference interval excludes zero stand out.

    report = ReportBuilder(title="Visit Reduction", study=STUDY_NAME)
    report.add_table("fits", "Fit Diagnostics", diagnostics, highlight_rows=[3])
    report.write(run_dir / "01_visit_reduction_report.html")
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import great_tables as gt
import polars as pl
from jinja2 import Environment

HIGHLIGHT_COLOR = "#fdecea"
MISSING_TEXT = "n/a"


def _wrap(kind: str, section_id: str, html: str, caption: str | None) -> str:
    parts = [f'<div class="{kind}-container" id="{section_id}">', html]
    if caption:
        parts.append(f'<p class="caption">{caption}</p>')
    parts.append("</div>")
    return "\n".join(parts)


@dataclass(frozen=True)
class TableSection:
    """Pre-rendered great_tables HTML."""

    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("table", self.id, self.html, self.caption)


@dataclass(frozen=True)
class TextSection:
    id: str
    title: str
    html: str
    caption: str | None = None

    def render(self) -> str:
        return _wrap("text", self.id, self.html, self.caption)


Section = TableSection | TextSection


def make_gt(
    df: pl.DataFrame,
    title: str | None = None,
    subtitle: str | None = None,
    column_labels: dict[str, str] | None = None,
    number_formats: dict[str, str] | None = None,
    source_note: str | None = None,
    highlight_rows: list[int] | None = None,
) -> str:
    """Render a polars table as inline-styled HTML.

    Args:
        df: Table to show, displayed in its own row order.
        title: Bold heading above the table; subtitle only shows with a title.
        column_labels: Column name -> header text. Names not in df are ignored.
        number_formats: Column name -> format spec such as ".3f" or ",.0f".
        source_note: Footnote under the table.
        highlight_rows: 0-based row positions to shade.

    Null cells (e.g. R-hat of a failed fit) print as "n/a".
    """
    if not isinstance(df, pl.DataFrame):
        msg = f"make_gt expects a polars DataFrame, got {type(df).__name__}"
        raise TypeError(msg)

    tbl = gt.GT(df)
    if title:
        tbl = tbl.tab_header(title=title, subtitle=subtitle)
    if column_labels:
        tbl = tbl.cols_label(**{k: v for k, v in column_labels.items() if k in df.columns})
    for col_name, fmt in (number_formats or {}).items():
        if col_name in df.columns:
            tbl = tbl.fmt_number(
                columns=col_name,
                decimals=_decimals_from_fmt(fmt),
                use_seps="," in fmt,
            )
    tbl = tbl.sub_missing(missing_text=MISSING_TEXT)
    if highlight_rows:
        tbl = tbl.tab_style(
            style=gt.style.fill(color=HIGHLIGHT_COLOR),
            locations=gt.loc.body(rows=list(highlight_rows)),
        )
    if source_note:
        tbl = tbl.tab_source_note(source_note)

    # Horizontal rules only: top, under the header, bottom.
    tbl = tbl.tab_options(
        table_border_top_style="solid",
        table_border_top_width="2px",
        table_border_top_color="#000000",
        table_border_bottom_style="solid",
        table_border_bottom_width="2px",
        table_border_bottom_color="#000000",
        column_labels_border_bottom_style="solid",
        column_labels_border_bottom_width="1px",
        column_labels_border_bottom_color="#000000",
        table_width="100%",
        table_font_size="13px",
        heading_title_font_size="15px",
        source_notes_font_size="11px",
    )
    return tbl.as_raw_html(inline_css=True)


def _decimals_from_fmt(fmt: str) -> int:
    """'.3f' -> 3, ',.0f' -> 0, anything without a precision -> 0."""
    m = re.search(r"\.(\d+)f", fmt)
    return int(m.group(1)) if m else 0


@dataclass
class ReportBuilder:
    """Ordered sections plus page metadata; render() produces the HTML page."""

    title: str = "Analysis Report"
    study: str = ""
    git_hash: str = ""
    sections: list[Section] = field(default_factory=list)

    def add(self, section: Section) -> None:
        self.sections.append(section)

    def add_table(
        self,
        section_id: str,
        title: str,
        df: pl.DataFrame,
        *,
        caption: str | None = None,
        **gt_options,
    ) -> None:
        """make_gt() the table and append it; gt_options pass through."""
        html = make_gt(df, **gt_options)
        self.add(TableSection(id=section_id, title=title, html=html, caption=caption))

    @property
    def has_sections(self) -> bool:
        return bool(self.sections)

    @property
    def n_sections(self) -> int:
        return len(self.sections)

    def render(self) -> str:
        entries = [
            {"number": i, "id": s.id, "title": s.title, "content": s.render()}
            for i, s in enumerate(self.sections, 1)
        ]
        return _TEMPLATE.render(
            title=self.title,
            study=self.study,
            git_hash=self.git_hash,
            generated_at=datetime.now(ZoneInfo("UTC")).strftime("%Y-%m-%d %H:%M UTC"),
            sections=entries,
            css=REPORT_CSS,
        )

    def write(self, path: Path) -> None:
        path.write_text(self.render(), encoding="utf-8")


REPORT_CSS = """\
* { box-sizing: border-box; margin: 0; padding: 0; }
body {
  font-family: "Segoe UI", Tahoma, Geneva, Verdana, sans-serif;
  max-width: 1100px;
  margin: 0 auto;
  padding: 24px 32px;
  color: #1a1a1a;
  line-height: 1.5;
}
header { border-bottom: 3px solid #2f5d50; padding-bottom: 12px; margin-bottom: 24px; }
header h1 { font-size: 22px; font-weight: 700; margin-bottom: 4px; }
header .meta { font-size: 13px; color: #555; }
header .meta span { margin-right: 16px; }
nav.toc { border-left: 3px solid #2f5d50; padding: 8px 16px; margin-bottom: 32px; }
nav.toc h2 { font-size: 14px; margin-bottom: 6px; }
nav.toc ol { padding-left: 20px; }
nav.toc li { font-size: 13px; }
nav.toc a { color: #2f5d50; }
section.report-section { margin-bottom: 36px; }
section.report-section h2 {
  font-size: 17px;
  font-weight: 600;
  border-bottom: 1px solid #999;
  padding-bottom: 4px;
  margin-bottom: 14px;
}
.section-number { color: #888; font-weight: 400; margin-right: 6px; }
.table-container { overflow-x: auto; margin-bottom: 12px; }
.text-container { margin-bottom: 12px; }
.caption { font-size: 12px; color: #666; font-style: italic; margin-top: 6px; }
footer { margin-top: 48px; font-size: 11px; color: #888; text-align: center; }"""

REPORT_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>{{ title }}</title>
  <style>{{ css }}</style>
</head>
<body>
  <header>
    <h1>{{ title }}</h1>
    <div class="meta">
      {% if study %}<span>Study: <strong>{{ study }}</strong></span>{% endif %}
      <span>Generated: {{ generated_at }}</span>
      {% if git_hash and git_hash != "unknown" %}\
<span>Git: <code>{{ git_hash[:8] }}</code></span>{% endif %}
    </div>
  </header>

  <nav class="toc">
    <h2>Contents</h2>
    <ol>
      {% for section in sections %}
      <li><a href="#{{ section.id }}">{{ section.title }}</a></li>
      {% endfor %}
    </ol>
  </nav>

  {% for section in sections %}
  <section class="report-section" id="{{ section.id }}">
    <h2>\
<span class="section-number">{{ section.number }}.</span> {{ section.title }}</h2>
    {{ section.content }}
  </section>
  {% endfor %}

  <footer>{{ study or title }}, generated {{ generated_at }}</footer>
</body>
</html>"""

_TEMPLATE = Environment(autoescape=False).from_string(REPORT_TEMPLATE)
