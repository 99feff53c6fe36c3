"""
Metric extraction from generated FCS reports.

The LLM is asked (see fcs_service.build_fcs_prompt) to start its answer with an
EXTRACTED_BUSINESS_NAME line and to end with an "N-Month Summary" block. Each
metric has its own extractor; an extractor that finds nothing returns None and
never fails the parse. Bump REPORT_FORMAT_VERSION whenever the prompt's summary
block and these patterns change together.
"""

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REPORT_FORMAT_VERSION = "2"

_LINE_PREFIX = r"^[ \t]*[-•*]?[ \t]*"
_MONEY = r"\$?\s*(-?[\d,]+(?:\.\d{1,2})?)"

BUSINESS_NAME_RE = re.compile(r"^EXTRACTED_BUSINESS_NAME:\s*(.+?)\s*$", re.MULTILINE)
SUMMARY_RE = re.compile(r"(\d+)-Month Summary[\s\S]*?(?=\n\s*\n|\Z)")
AVERAGE_DEPOSITS_RE = re.compile(_LINE_PREFIX + r"Average Deposits:\s*" + _MONEY, re.MULTILINE)
AVERAGE_REVENUE_RE = re.compile(_LINE_PREFIX + r"Average True Revenue:\s*" + _MONEY, re.MULTILINE)
# Anchored to the line start so it does not match "Average Negative Days"
TOTAL_NEGATIVE_DAYS_RE = re.compile(_LINE_PREFIX + r"Negative Days:\s*(\d+)", re.MULTILINE)
AVERAGE_NEGATIVE_DAYS_RE = re.compile(_LINE_PREFIX + r"Average Negative Days:\s*([\d.]+)", re.MULTILINE)
STATE_RE = re.compile(_LINE_PREFIX + r"State:\s*\(?([A-Z]{2})\b", re.MULTILINE)
INDUSTRY_RE = re.compile(_LINE_PREFIX + r"Industry:\s*(.+?)\s*$", re.MULTILINE)
POSITION_RE = re.compile(r"Position \(ASSUME NEXT\):\s*(\d+)")


@dataclass
class FCSMetrics:
    extracted_business_name: Optional[str] = None
    statement_months: Optional[int] = None
    average_deposits: Optional[float] = None
    average_revenue: Optional[float] = None
    total_negative_days: Optional[int] = None
    average_negative_days: Optional[float] = None
    state: Optional[str] = None
    industry: Optional[str] = None
    position_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _money(value: str) -> Optional[float]:
    try:
        return float(value.replace(",", ""))
    except ValueError:
        return None


def extract_business_name(report: str) -> Optional[str]:
    match = BUSINESS_NAME_RE.search(report)
    return match.group(1).strip() if match else None


def extract_summary_block(report: str) -> Optional[str]:
    match = SUMMARY_RE.search(report)
    return match.group(0) if match else None


def extract_statement_months(summary: str) -> Optional[int]:
    match = SUMMARY_RE.search(summary)
    return int(match.group(1)) if match else None


def extract_average_deposits(summary: str) -> Optional[float]:
    match = AVERAGE_DEPOSITS_RE.search(summary)
    return _money(match.group(1)) if match else None


def extract_average_revenue(summary: str) -> Optional[float]:
    match = AVERAGE_REVENUE_RE.search(summary)
    return _money(match.group(1)) if match else None


def extract_total_negative_days(summary: str) -> Optional[int]:
    match = TOTAL_NEGATIVE_DAYS_RE.search(summary)
    return int(match.group(1)) if match else None


def extract_average_negative_days(summary: str) -> Optional[float]:
    match = AVERAGE_NEGATIVE_DAYS_RE.search(summary)
    if not match:
        return None
    try:
        return float(match.group(1).rstrip("."))
    except ValueError:
        return None


def extract_state(summary: str) -> Optional[str]:
    match = STATE_RE.search(summary)
    return match.group(1) if match else None


def extract_industry(summary: str) -> Optional[str]:
    match = INDUSTRY_RE.search(summary)
    if not match:
        return None
    industry = match.group(1).strip()
    return None if industry.upper() in ("N/A", "UNKNOWN") else industry


def extract_position_count(summary: str) -> Optional[int]:
    match = POSITION_RE.search(summary)
    return int(match.group(1)) if match else None


SUMMARY_EXTRACTORS = {
    "statement_months": extract_statement_months,
    "average_deposits": extract_average_deposits,
    "average_revenue": extract_average_revenue,
    "total_negative_days": extract_total_negative_days,
    "average_negative_days": extract_average_negative_days,
    "state": extract_state,
    "industry": extract_industry,
    "position_count": extract_position_count,
}


def parse_fcs_report(report: Optional[str]) -> FCSMetrics:
    """Pull summary metrics out of a report; unmatched metrics stay None."""
    metrics = FCSMetrics()
    if not report:
        return metrics

    metrics.extracted_business_name = extract_business_name(report)

    summary = extract_summary_block(report)
    if summary is None:
        logger.info("FCS report has no Month Summary block; only business name parsed")
        return metrics

    for field, extractor in SUMMARY_EXTRACTORS.items():
        setattr(metrics, field, extractor(summary))
    return metrics
