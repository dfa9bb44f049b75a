"""Compliance report rendering.

build_report() turns an assessment into a plain dict; render_report()
serializes that dict as JSON, CSV (one row per finding), HTML or PDF.
"""

import csv
import html
import io
import json
from datetime import datetime
from typing import Any, Dict, List, Union

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from aegis_audit.common.constants import AuditConstants
from aegis_audit.compliance.schemas import ComplianceAssessment, FindingStatus


REPORT_FORMATS = ("json", "csv", "html", "pdf")

SEVERITIES = ("critical", "high", "medium", "low")

GLOSSARY = {
    "GDPR": "General Data Protection Regulation",
    "CCPA": "California Consumer Privacy Act",
    "SOX": "Sarbanes-Oxley Act",
    "PCI DSS": "Payment Card Industry Data Security Standard",
    "HIPAA": "Health Insurance Portability and Accountability Act",
}

FINDING_CSV_COLUMNS = [
    "finding_id", "rule_id", "check_id", "severity", "status", "title",
    "assigned_to", "remediation_due", "action_status",
]

# Header row colour shared by every PDF table
_HEADER_COLOR = colors.Color(0.2, 0.4, 0.6)


def executive_summary(assessment: ComplianceAssessment) -> str:
    critical = sum(1 for f in assessment.findings if f.severity == "critical")
    high = sum(1 for f in assessment.findings if f.severity == "high")
    return (
        f"Compliance assessment for {assessment.framework.value.upper()} completed with an "
        f"overall score of {assessment.score:g}%. {len(assessment.findings)} findings identified, "
        f"including {critical} critical and {high} high severity issues. "
        f"Current compliance status: {assessment.overall_status.value}."
    )


def next_steps(assessment: ComplianceAssessment) -> List[str]:
    steps = []
    if assessment.findings:
        steps.extend([
            "Address identified compliance gaps",
            "Implement recommended remediation actions",
            "Conduct follow-up verification",
        ])
    steps.append("Schedule next assessment")
    steps.append("Update compliance policies and procedures")
    return steps


def build_report(assessment: ComplianceAssessment, generated_at: datetime) -> Dict[str, Any]:
    """Report document for an assessment."""
    findings = [f.model_dump(mode="json") for f in assessment.findings]
    grouped: Dict[str, List[Dict[str, Any]]] = {severity: [] for severity in SEVERITIES}
    for finding in findings:
        grouped[finding["severity"]].append(finding)

    return {
        "assessment_id": assessment.id,
        "framework": assessment.framework.value,
        "scope": assessment.scope,
        "assessment_period": {
            "start": assessment.start_date.isoformat(),
            "end": assessment.end_date.isoformat() if assessment.end_date else None,
        },
        "assessor": assessment.assessor,
        "overall_status": assessment.overall_status.value,
        "compliance_score": assessment.score,
        "executive_summary": executive_summary(assessment),
        "findings_summary": {
            "total": len(findings),
            "by_severity": {severity: len(items) for severity, items in grouped.items()},
            "open": sum(1 for f in assessment.findings if f.status == FindingStatus.OPEN),
        },
        "findings_by_severity": grouped,
        "recommendations": [r.model_dump(mode="json") for r in assessment.recommendations],
        "action_plan": [a.model_dump(mode="json") for a in assessment.action_plan],
        "manual_tasks": [t.model_dump(mode="json") for t in assessment.manual_tasks],
        "next_steps": next_steps(assessment),
        "next_assessment": assessment.next_assessment.isoformat(),
        "appendices": {
            "methodology": "Automated and manual compliance assessment",
            "standards_referenced": [assessment.framework.value],
            "glossary": GLOSSARY,
        },
        "generated_at": generated_at.isoformat(),
        "generated_by": AuditConstants.SOURCE,
    }


def render_report(report: Dict[str, Any], fmt: str) -> Union[str, bytes]:
    """Serialize a report; PDF comes back as bytes, everything else as text."""
    if fmt == "json":
        return json.dumps(report, indent=2)
    if fmt == "csv":
        return _to_csv(report)
    if fmt == "html":
        return _to_html(report)
    if fmt == "pdf":
        return _to_pdf(report)
    raise ValueError(f"Unsupported report format: {fmt}")


def _finding_rows(report: Dict[str, Any]) -> List[Dict[str, Any]]:
    plans = {a["finding_id"]: a for a in report["action_plan"]}
    rows = []
    for severity in SEVERITIES:
        for finding in report["findings_by_severity"][severity]:
            plan = plans.get(finding["id"], {})
            rows.append({
                "finding_id": finding["id"],
                "rule_id": finding["rule_id"],
                "check_id": finding.get("check_id") or "",
                "severity": severity,
                "status": finding["status"],
                "title": finding["title"],
                "assigned_to": finding.get("assigned_to") or "",
                "remediation_due": plan.get("due_date", ""),
                "action_status": plan.get("status", ""),
            })
    return rows


def _to_csv(report: Dict[str, Any]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=FINDING_CSV_COLUMNS)
    writer.writeheader()
    writer.writerows(_finding_rows(report))
    return output.getvalue()


def _html_table(headers: List[str], rows: List[List[Any]]) -> str:
    head = "".join(f"<th>{html.escape(h)}</th>" for h in headers)
    body = "".join(
        "<tr>" + "".join(f"<td>{html.escape(str(cell))}</td>" for cell in row) + "</tr>"
        for row in rows
    )
    return f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>"


def _to_html(report: Dict[str, Any]) -> str:
    e = html.escape
    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\">",
        f"<title>Compliance Report {e(report['assessment_id'])}</title>",
        "</head><body>",
        f"<h1>{e(report['framework'].upper())} Compliance Report</h1>",
        f"<p>Scope: {e(report['scope'])} | Assessor: {e(report['assessor'])} | "
        f"Generated: {e(report['generated_at'])}</p>",
        "<h2>Executive Summary</h2>",
        f"<p>{e(report['executive_summary'])}</p>",
        "<h2>Findings</h2>",
    ]
    for severity in SEVERITIES:
        items = report["findings_by_severity"][severity]
        parts.append(f"<h3>{severity.title()} ({len(items)})</h3>")
        if items:
            parts.append(_html_table(
                ["ID", "Rule", "Title", "Status"],
                [[f["id"], f["rule_id"], f["title"], f["status"]] for f in items],
            ))

    parts.append("<h2>Recommendations</h2>")
    parts.append(_html_table(
        ["Rule", "Title", "Priority", "Status"],
        [[r["rule_id"], r["title"], r["priority"], r["status"]] for r in report["recommendations"]],
    ))
    parts.append("<h2>Action Plan</h2>")
    parts.append(_html_table(
        ["Action", "Owner", "Due", "Priority", "Status"],
        [[a["action"], a["owner"], a["due_date"], a["priority"], a["status"]]
         for a in report["action_plan"]],
    ))
    parts.append("<h2>Next Steps</h2><ul>")
    parts.extend(f"<li>{e(step)}</li>" for step in report["next_steps"])
    parts.append("</ul><h2>Glossary</h2><dl>")
    for term, meaning in report["appendices"]["glossary"].items():
        parts.append(f"<dt>{e(term)}</dt><dd>{e(meaning)}</dd>")
    parts.append("</dl></body></html>")
    return "\n".join(parts)


def _pdf_table(rows: List[List[Any]], col_widths: List[float]) -> Table:
    # Paragraph cells wrap long text; escape since Paragraph parses markup
    styles = getSampleStyleSheet()
    cells = [[Paragraph(html.escape(str(cell)), styles["BodyText"]) for cell in row] for row in rows]
    table = Table(cells, colWidths=col_widths, repeatRows=1)
    table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), _HEADER_COLOR),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.white),
        ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.Color(0.8, 0.8, 0.8)),
        ('TOPPADDING', (0, 0), (-1, -1), 4),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
    ]))
    return table


def _to_pdf(report: Dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        leftMargin=0.75 * inch,
        rightMargin=0.75 * inch,
        title=f"Compliance Report {report['assessment_id']}",
    )
    styles = getSampleStyleSheet()
    e = html.escape
    elements: List[Any] = []

    elements.append(Paragraph(f"{e(report['framework'].upper())} Compliance Report", styles['Title']))
    elements.append(Paragraph(f"Assessment ID: {e(report['assessment_id'])}", styles['Normal']))
    elements.append(Paragraph(f"Scope: {e(report['scope'])}", styles['Normal']))
    elements.append(Paragraph(f"Assessor: {e(report['assessor'])}", styles['Normal']))
    elements.append(Paragraph(f"Generated: {e(report['generated_at'])}", styles['Normal']))
    elements.append(Spacer(1, 16))

    elements.append(Paragraph("Executive Summary", styles['Heading2']))
    elements.append(Paragraph(e(report['executive_summary']), styles['Normal']))
    elements.append(Spacer(1, 12))

    elements.append(Paragraph("Findings", styles['Heading2']))
    for severity in SEVERITIES:
        items = report["findings_by_severity"][severity]
        elements.append(Paragraph(f"{severity.title()} ({len(items)})", styles['Heading3']))
        if items:
            elements.append(_pdf_table(
                [["Rule", "Title", "Status"]]
                + [[f["rule_id"], f["title"], f["status"]] for f in items],
                [1.5 * inch, 3.5 * inch, 1.3 * inch],
            ))
    elements.append(Spacer(1, 12))

    if report["recommendations"]:
        elements.append(Paragraph("Recommendations", styles['Heading2']))
        elements.append(_pdf_table(
            [["Rule", "Recommendation", "Priority"]]
            + [[r["rule_id"], r["title"], r["priority"]] for r in report["recommendations"]],
            [1.5 * inch, 3.8 * inch, 1.0 * inch],
        ))
        elements.append(Spacer(1, 12))

    if report["action_plan"]:
        elements.append(Paragraph("Action Plan", styles['Heading2']))
        elements.append(_pdf_table(
            [["Action", "Owner", "Due", "Status"]]
            + [[a["action"], a["owner"], a["due_date"][:10], a["status"]] for a in report["action_plan"]],
            [2.8 * inch, 1.3 * inch, 1.1 * inch, 1.1 * inch],
        ))
        elements.append(Spacer(1, 12))

    elements.append(Paragraph("Next Steps", styles['Heading2']))
    for step in report["next_steps"]:
        elements.append(Paragraph(f"• {e(step)}", styles['Normal']))
    elements.append(Spacer(1, 12))

    elements.append(Paragraph("Glossary", styles['Heading2']))
    for term, meaning in report["appendices"]["glossary"].items():
        elements.append(Paragraph(f"<b>{e(term)}</b>: {e(meaning)}", styles['Normal']))

    doc.build(elements)
    return buffer.getvalue()
