"""
services/remedy/pdf.py
Printable remedy sheet rendered with reportlab. Used by the download route and the delivery task.
"""

import io
import logging
from datetime import datetime
from html import escape
from typing import Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from config.settings import settings
from shared.models.models import RemedyDocument, RemedyTemplate, User
from shared.utils.timeutils import format_local

logger = logging.getLogger(__name__)

BRAND_COLOR = colors.HexColor("#E65100")
LIGHT_GRAY = colors.HexColor("#f5f5f5")


def remedy_filename(document: RemedyDocument) -> str:
    return f"remedy-{str(document.id)[:8]}.pdf"


def _enum_label(value) -> str:
    return getattr(value, "value", value) or ""


def build_remedy_pdf(
    document: RemedyDocument,
    template: RemedyTemplate,
    devotee: User,
    guruji: Optional[User],
    issued_at: Optional[datetime] = None,
) -> bytes:
    """Render one remedy document. Custom instructions, dosage and duration override the template's."""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=0.75 * inch,
        leftMargin=0.75 * inch,
        topMargin=0.75 * inch,
        bottomMargin=0.75 * inch,
        title=f"Remedy - {template.name}",
    )

    styles = getSampleStyleSheet()
    title_style = ParagraphStyle(
        "AshramTitle",
        parent=styles["Heading1"],
        fontSize=20,
        textColor=BRAND_COLOR,
        alignment=1,
        spaceAfter=4,
    )
    subtitle_style = ParagraphStyle(
        "AshramSubtitle",
        parent=styles["Normal"],
        fontSize=11,
        textColor=colors.grey,
        alignment=1,
        spaceAfter=18,
    )
    heading_style = ParagraphStyle(
        "SectionHeading",
        parent=styles["Heading2"],
        fontSize=13,
        textColor=BRAND_COLOR,
        spaceBefore=14,
        spaceAfter=6,
    )
    body_style = ParagraphStyle("Body", parent=styles["Normal"], fontSize=11, leading=15)
    footer_style = ParagraphStyle(
        "Footer",
        parent=styles["Normal"],
        fontSize=8,
        textColor=colors.grey,
        alignment=1,
        spaceBefore=30,
    )

    instructions = document.custom_instructions or template.instructions
    dosage = document.custom_dosage or template.dosage or "As advised"
    duration = document.custom_duration or template.duration or "As advised"
    issued = format_local(issued_at or document.created_at, "%d %b %Y")

    story = [
        Paragraph(escape(settings.ASHRAM_NAME), title_style),
        Paragraph("Remedy Prescription", subtitle_style),
    ]

    meta = Table(
        [
            ["Devotee", devotee.name, "Date", issued],
            ["Guruji", guruji.name if guruji else "-", "Reference", str(document.id)[:8].upper()],
        ],
        colWidths=[1.0 * inch, 2.4 * inch, 1.0 * inch, 2.1 * inch],
    )
    meta.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), LIGHT_GRAY),
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("FONTNAME", (2, 0), (2, -1), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
    ]))
    story.append(meta)

    story.append(Paragraph("Remedy", heading_style))
    remedy_table = Table(
        [
            ["Name", template.name],
            ["Type", _enum_label(template.type).title()],
            ["Category", template.category],
            ["Dosage", dosage],
            ["Duration", duration],
        ],
        colWidths=[1.4 * inch, 5.1 * inch],
    )
    remedy_table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.lightgrey),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 5),
    ]))
    story.append(remedy_table)

    if template.description:
        story.append(Paragraph("About", heading_style))
        story.append(Paragraph(escape(template.description), body_style))

    story.append(Paragraph("Instructions", heading_style))
    for line in instructions.splitlines():
        if line.strip():
            story.append(Paragraph(escape(line.strip()), body_style))
            story.append(Spacer(1, 4))

    story.append(Paragraph(
        f"Issued by {escape(settings.ASHRAM_NAME)}. Follow the guidance of your guruji and "
        "consult a physician for any medical condition.",
        footer_style,
    ))

    doc.build(story)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    logger.debug(f"Rendered remedy PDF {document.id} ({len(pdf_bytes)} bytes)")
    return pdf_bytes
