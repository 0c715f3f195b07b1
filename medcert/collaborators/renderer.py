"""
Certificate PDF rendering.

Uses ReportLab to lay out a one-page medical certificate. The layout is
deliberately plain; anything that needs to be verified lives in the
certificate number and verification code printed at the bottom.
"""
from dataclasses import dataclass
from datetime import date, datetime
from io import BytesIO
from typing import Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle


@dataclass(frozen=True)
class CertificateRenderInput:
    certificate_number: str
    verification_code: str
    subtype: str
    patient_name: str
    start_date: date
    end_date: date
    clinician_name: str
    issued_at: datetime
    date_of_birth: Optional[date] = None
    institution_name: Optional[str] = None
    carer_person_name: Optional[str] = None
    carer_relationship: Optional[str] = None
    verify_url: Optional[str] = None


_TITLES = {
    "work": "Medical Certificate - Absence from Work",
    "study": "Medical Certificate - Absence from Study",
    "carer": "Carer's Leave Certificate",
}


class CertificateRenderer:
    def render(self, inputs: CertificateRenderInput) -> bytes:
        raise NotImplementedError


class ReportLabCertificateRenderer(CertificateRenderer):
    """Default renderer. Returns PDF bytes."""

    def render(self, inputs: CertificateRenderInput) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=72,
            leftMargin=72,
            topMargin=72,
            bottomMargin=36,
            title=inputs.certificate_number,
        )

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "CertTitle",
            parent=styles["Heading1"],
            fontSize=20,
            spaceAfter=24,
            alignment=TA_CENTER,
            fontName="Helvetica-Bold",
        )
        body_style = ParagraphStyle(
            "CertBody",
            parent=styles["Normal"],
            fontSize=11,
            leading=15,
            spaceAfter=8,
            fontName="Helvetica",
        )
        footer_style = ParagraphStyle(
            "CertFooter",
            parent=styles["Normal"],
            fontSize=8,
            textColor=colors.HexColor("#555555"),
            fontName="Helvetica",
        )

        story = [
            Paragraph(_TITLES.get(inputs.subtype, "Medical Certificate"), title_style),
            Paragraph(self._statement(inputs), body_style),
            Spacer(1, 0.2 * inch),
        ]

        rows = [
            ["Patient", inputs.patient_name],
            ["Date of birth", inputs.date_of_birth.isoformat() if inputs.date_of_birth else "-"],
            ["From", inputs.start_date.isoformat()],
            ["To", inputs.end_date.isoformat()],
        ]
        if inputs.subtype == "study" and inputs.institution_name:
            rows.append(["Institution", inputs.institution_name])
        if inputs.subtype == "carer":
            rows.append(["Person cared for", inputs.carer_person_name or "-"])
            rows.append(["Relationship", inputs.carer_relationship or "-"])
        rows.append(["Issued by", inputs.clinician_name])
        rows.append(["Issued at", inputs.issued_at.strftime("%Y-%m-%d %H:%M UTC")])

        table = Table(rows, colWidths=[1.8 * inch, 4.2 * inch])
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 10),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.HexColor("#dddddd")),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ]))
        story.append(table)
        story.append(Spacer(1, 0.5 * inch))

        footer = f"Certificate {inputs.certificate_number} &bull; Verification code {inputs.verification_code}"
        if inputs.verify_url:
            footer += f" &bull; Verify at {inputs.verify_url}"
        story.append(Paragraph(footer, footer_style))

        doc.build(story)
        return buffer.getvalue()

    def _statement(self, inputs: CertificateRenderInput) -> str:
        period = f"{inputs.start_date.strftime('%d %B %Y')} to {inputs.end_date.strftime('%d %B %Y')}"
        if inputs.subtype == "carer":
            return (
                f"This is to certify that {escape(inputs.patient_name)} was required to care for "
                f"{escape(inputs.carer_person_name or 'a family member')} for the period {period}."
            )
        activity = "their studies" if inputs.subtype == "study" else "work"
        return (
            f"This is to certify that in my opinion {escape(inputs.patient_name)} was unfit "
            f"for {activity} for the period {period}."
        )
