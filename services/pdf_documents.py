"""
PDF Document Generation for Pre-Trade Applications

Renders the three documents kept in every client folder:
- Client Information: the submitted form, PEP declaration and signature
- Resubmission Tracking: submission history of a client folder
- Legal Approval: certificate produced when the approval link is used

Rendering is pure (data in, PDF bytes out); callers upload the result.
"""

import io
import os
import re
import base64
import logging
from datetime import datetime
from html import escape
from typing import Dict, Any, Optional, List

from reportlab.graphics.shapes import Drawing, Circle, PolyLine
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle,
    HRFlowable, Image
)
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY

from .errors import RenderFailure

logger = logging.getLogger(__name__)

# File names inside a client folder
CLIENT_INFORMATION_FILE = 'Client_Information.pdf'
TRACKING_FILE = 'Resubmission_Tracking.pdf'
APPROVAL_FILE = 'Legal_Approval.pdf'

APPROVED_BY = 'Legal Team'
APPROVAL_STATUS = 'APPROVED FOR TRADING'

# Highest pep_*_i index read from the form
MAX_PEP_ENTRIES = 5

ATTESTATION_TEXT = (
    'I HEREBY SWEAR OR AFFIRM THAT THE INFORMATION SET FORTH ABOVE AND ANY OTHER '
    'DOCUMENTATION PROVIDED FOR THE PURPOSE OF ESTABLISHING AN ACCOUNT IS TRUE, '
    'ACCURATE AND COMPLETE.'
)

CERTIFICATION_TEXT = (
    'This document certifies that the above-mentioned application has been thoroughly '
    'reviewed and approved by the legal team for pre-trade activities. All compliance '
    'requirements have been satisfied.'
)

# Form fields that are never printed as data
EXCLUDED_FIELDS = {'signature', 'signatureData', 'allowDuplicate', 'applicationType'}

INDIVIDUAL_SECTIONS = [
    # (title, fields, fields of which at least one must be present; None = always)
    ('APPLICANT DETAILS',
     ['fullName', 'idNumber', 'mobile', 'email', 'residentialAddress', 'residency'], None),
    ('PROFESSION DETAILS',
     ['employmentStatus', 'employer', 'occupation', 'sourceOfFunds'], ['employmentStatus', 'employer']),
    ('BANKING DETAILS',
     ['bankName', 'accountHolder', 'accountNumber', 'branchCode', 'swift'], None),
    ('TRANSACTION INFORMATION',
     ['transactionSize', 'purpose'], ['transactionSize']),
]

BUSINESS_SECTIONS = [
    ('REPRESENTATIVE DETAILS',
     ['repFullName', 'repIdNumber', 'repMobile', 'repEmail'], None),
    ('ENTITY DETAILS',
     ['entityName', 'registrationNumber', 'entityType', 'registeredAddress'], None),
    ('BANKING DETAILS',
     ['bankName', 'accountHolder', 'accountNumber', 'branchCode', 'swift'], None),
]

_DATA_URL_PREFIX = re.compile(r'^data:image/[\w.+-]+;base64,')


def _get_styles() -> Dict[str, ParagraphStyle]:
    """Get custom paragraph styles for documents."""
    styles = getSampleStyleSheet()

    return {
        'Title': ParagraphStyle(
            'DocTitle',
            parent=styles['Title'],
            fontSize=15,
            spaceAfter=1*mm,
            textColor=colors.black
        ),
        'Subtitle': ParagraphStyle(
            'DocSubtitle',
            parent=styles['Normal'],
            fontSize=10,
            alignment=TA_CENTER,
            spaceAfter=3*mm
        ),
        'Meta': ParagraphStyle(
            'Meta',
            parent=styles['Normal'],
            fontSize=8,
            alignment=TA_CENTER
        ),
        'Heading': ParagraphStyle(
            'SectionHeading',
            parent=styles['Heading2'],
            fontSize=10,
            spaceBefore=4*mm,
            spaceAfter=1*mm,
            textColor=colors.black
        ),
        'Normal': ParagraphStyle(
            'DocNormal',
            parent=styles['Normal'],
            fontSize=8,
            leading=10
        ),
        'Detail': ParagraphStyle(
            'Detail',
            parent=styles['Normal'],
            fontSize=10,
            leading=14
        ),
        'Small': ParagraphStyle(
            'Small',
            parent=styles['Normal'],
            fontSize=7,
            leading=9,
            fontName='Helvetica-Oblique',
            alignment=TA_JUSTIFY
        ),
        'Status': ParagraphStyle(
            'Status',
            parent=styles['Title'],
            fontSize=16,
            spaceBefore=4*mm
        ),
    }


def _label(key: str) -> str:
    """fullName -> FULL NAME, pep_foreign -> PEP FOREIGN"""
    return re.sub(r'([A-Z])', r' \1', key).upper().strip().replace('_', ' ')


def _text(value: Any) -> str:
    """Escape a form value for Paragraph markup"""
    if isinstance(value, (list, tuple)):
        value = ', '.join(str(v) for v in value)
    return escape(str(value)).replace('\n', '<br/>')


def _logo(logo_path: Optional[str]) -> List:
    if not logo_path or not os.path.exists(logo_path):
        return []
    logo = Image(logo_path, width=100, height=35, kind='proportional')
    logo.hAlign = 'LEFT'
    return [logo]


def _section_heading(title: str, styles: Dict) -> List:
    return [
        Paragraph(title, styles['Heading']),
        HRFlowable(width='100%', thickness=0.5, color=colors.black, spaceAfter=2*mm),
    ]


def _create_section(title: str, data: Dict[str, Any], styles: Dict) -> List:
    """Heading plus a compact two-column layout of the non-empty fields."""
    cells = [
        Paragraph(f"<b>{_label(key)}:</b><br/>{_text(value)}", styles['Normal'])
        for key, value in data.items()
        if value and key not in EXCLUDED_FIELDS
    ]
    if not cells:
        return []

    if len(cells) % 2:
        cells.append('')
    rows = [cells[i:i + 2] for i in range(0, len(cells), 2)]

    table = Table(rows, colWidths=[92*mm, 92*mm])
    table.setStyle(TableStyle([
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('LEFTPADDING', (0, 0), (-1, -1), 0),
        ('TOPPADDING', (0, 0), (-1, -1), 1),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
    ]))
    return _section_heading(title, styles) + [table]


def _present(fields: Dict[str, str], key: str) -> bool:
    return bool((fields.get(key) or '').strip())


def pep_summary(fields: Dict[str, str]) -> str:
    """One-line PEP answers, defaulting to No"""
    return '  |  '.join([
        f"Foreign PEP: {fields.get('pep_foreign') or fields.get('foreignPep') or 'No'}",
        f"Domestic PEP: {fields.get('pep_domestic') or fields.get('domesticPep') or 'No'}",
        f"Prominent Person: {fields.get('pep_prominent') or fields.get('familyPep') or 'No'}",
    ])


def pep_entries(fields: Dict[str, str]) -> List[Dict[str, Any]]:
    """Indexed PEP entries 1..MAX_PEP_ENTRIES that have at least one value."""
    entries = []
    for i in range(1, MAX_PEP_ENTRIES + 1):
        entry = {
            'index': i,
            'position': fields.get(f'pep_position_{i}', ''),
            'organisation': fields.get(f'pep_organisation_{i}', ''),
            'relationship': fields.get(f'pep_relationship_{i}', ''),
            'period': fields.get(f'pep_period_{i}', ''),
        }
        if any(entry[k] for k in ('position', 'organisation', 'relationship', 'period')):
            entries.append(entry)
    return entries


def _create_pep_declaration(fields: Dict[str, str], styles: Dict) -> List:
    elements = _section_heading('PEP DECLARATION', styles)
    elements.append(Paragraph(_text(pep_summary(fields)), styles['Normal']))

    entries = pep_entries(fields)
    if not entries:
        return elements

    elements.append(Spacer(1, 2*mm))
    elements.append(Paragraph('<b>PEP Details:</b>', styles['Normal']))

    labels = [
        ('position', 'Position'),
        ('organisation', 'Organisation/Country'),
        ('relationship', 'Relationship'),
        ('period', 'Period Held'),
    ]
    for entry in entries:
        lines = [f"<b>Entry {entry['index']}:</b>"]
        lines += [
            f"&nbsp;&nbsp;<b>{label}:</b> {_text(entry[key])}"
            for key, label in labels if entry[key]
        ]
        elements.append(Paragraph('<br/>'.join(lines), styles['Normal']))
        elements.append(Spacer(1, 1*mm))

    return elements


def _signature_flowable(signature_data: str, styles: Dict):
    """Decode a base64 PNG signature; undecodable payloads fall back to a notice."""
    try:
        raw = base64.b64decode(_DATA_URL_PREFIX.sub('', signature_data.strip()))
        ImageReader(io.BytesIO(raw)).getSize()
        signature = Image(io.BytesIO(raw), width=120, height=36, kind='proportional')
        signature.hAlign = 'LEFT'
        return signature
    except Exception as e:
        logger.warning(f"Error adding signature image: {e}")
        return Paragraph('Digital signature on file', styles['Normal'])


def _create_attestation(fields: Dict[str, str], signature_data: Optional[str], styles: Dict) -> List:
    elements = _section_heading('ATTESTATION', styles)
    elements.append(Paragraph(ATTESTATION_TEXT, styles['Small']))
    elements.append(Spacer(1, 3*mm))

    name_date = Table([[
        Paragraph(f"<b>Name:</b> {_text(fields.get('attestationName') or 'N/A')}", styles['Normal']),
        Paragraph(f"<b>Date:</b> {_text(fields.get('attestationDate') or 'N/A')}", styles['Normal']),
    ]], colWidths=[92*mm, 92*mm])
    name_date.setStyle(TableStyle([('LEFTPADDING', (0, 0), (-1, -1), 0)]))
    elements.append(name_date)
    elements.append(Spacer(1, 2*mm))

    if signature_data:
        elements.append(Paragraph('<b>Signature:</b>', styles['Normal']))
        elements.append(Spacer(1, 1*mm))
        elements.append(_signature_flowable(signature_data, styles))
    else:
        elements.append(Paragraph(
            f"<b>Signature:</b> {_text(fields.get('signature') or 'N/A')}", styles['Normal']
        ))

    return elements


def _build_pdf(elements: List, title: str) -> bytes:
    """Lay out elements on A4 with the standard footer, return PDF bytes"""
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=30,
        leftMargin=30,
        topMargin=18,
        bottomMargin=20*mm,
        title=title
    )

    def add_page_number(canvas, doc):
        canvas.saveState()
        page_num = canvas.getPageNumber()
        text = f"Page {page_num} | Confidential | Generated by Pre-Trade Application System"
        canvas.setFont('Helvetica', 7)
        canvas.setFillColor(colors.HexColor('#6c757d'))
        canvas.drawCentredString(A4[0] / 2, 10*mm, text)
        canvas.restoreState()

    try:
        doc.build(elements, onFirstPage=add_page_number, onLaterPages=add_page_number)
    except Exception as e:
        logger.exception(f"Error building {title} PDF")
        raise RenderFailure(f"Could not render {title}: {e}") from e

    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes


def render_client_information(
    fields: Dict[str, str],
    folder_name: str,
    signature_data: Optional[str] = None,
    generated_at: Optional[datetime] = None,
    logo_path: Optional[str] = None
) -> bytes:
    """
    Render the Client Information document.

    Args:
        fields: Flat form fields (applicantType selects the individual or business layout)
        folder_name: Client folder the document belongs to
        signature_data: Base64 PNG, optionally a data: URL
        generated_at: Submission time shown on the document
        logo_path: Optional logo drawn in the header

    Returns:
        PDF bytes
    """
    styles = _get_styles()
    generated_at = generated_at or datetime.now()
    is_individual = fields.get('applicantType') == 'individual'

    elements = _logo(logo_path)
    elements.append(Paragraph('PRE-TRADE APPLICATION', styles['Title']))
    elements.append(Paragraph('INDIVIDUAL' if is_individual else 'BUSINESS', styles['Subtitle']))
    elements.append(Paragraph(
        f"Submission Date: {generated_at.strftime('%d %b %Y')}"
        f"&nbsp;&nbsp;&nbsp;&nbsp;&nbsp;Client Folder: {_text(folder_name)}",
        styles['Meta']
    ))
    elements.append(Spacer(1, 3*mm))

    for title, keys, required in (INDIVIDUAL_SECTIONS if is_individual else BUSINESS_SECTIONS):
        if required and not any(_present(fields, k) for k in required):
            continue
        elements.extend(_create_section(title, {k: fields.get(k) for k in keys}, styles))

    elements.extend(_create_pep_declaration(fields, styles))
    elements.extend(_create_attestation(fields, signature_data, styles))

    return _build_pdf(elements, 'Client Information')


def build_tracking_entries(
    is_resubmission: bool,
    previous_created_at: Optional[datetime],
    now: datetime
) -> List[Dict[str, str]]:
    """
    Submission history shown on the tracking document.

    Earlier entries are not read back from the previous document: a resubmission
    yields at most the synthesized original entry plus the current one.
    """
    entries = []
    if is_resubmission and previous_created_at:
        entries.append({
            'date': previous_created_at.strftime('%Y-%m-%d'),
            'note': 'Original submission'
        })

    entries.append({
        'date': now.strftime('%Y-%m-%d %H:%M:%S'),
        'note': 'Resubmission - Information updated' if is_resubmission else 'Initial submission'
    })
    return entries


def render_resubmission_tracking(
    client_name: str,
    entries: List[Dict[str, str]],
    logo_path: Optional[str] = None
) -> bytes:
    """Render the Resubmission Tracking document, returns PDF bytes"""
    styles = _get_styles()

    elements = _logo(logo_path)
    elements.append(Paragraph('APPLICATION RESUBMISSION TRACKING', styles['Title']))
    elements.append(Spacer(1, 6*mm))
    elements.append(Paragraph('<b>Client Name:</b>', styles['Detail']))
    elements.append(Paragraph(_text(client_name), styles['Normal']))
    elements.append(Spacer(1, 4*mm))

    elements.extend(_section_heading('SUBMISSION HISTORY', styles))
    for index, entry in enumerate(entries, start=1):
        elements.append(Paragraph(
            f"<b>{index}.</b> {_text(entry['date'])} - {_text(entry['note'])}",
            styles['Normal']
        ))
        elements.append(Spacer(1, 2*mm))

    elements.append(Spacer(1, 6*mm))
    footer = ParagraphStyle('TrackingFooter', parent=styles['Small'], alignment=TA_CENTER)
    elements.append(Paragraph(
        'This document tracks all submission and resubmission dates for compliance purposes.',
        footer
    ))

    return _build_pdf(elements, 'Resubmission Tracking')


def approval_reference(now: datetime) -> str:
    """Reference printed on the certificate: milliseconds since the epoch"""
    return str(int(now.timestamp() * 1000))


def _approval_badge() -> Drawing:
    """Circle with a check mark"""
    badge = Drawing(140, 140)
    badge.add(Circle(70, 70, 65, fillColor=colors.white, strokeColor=colors.black, strokeWidth=1))
    badge.add(PolyLine(
        [50, 70, 65, 55, 95, 85],
        strokeColor=colors.black,
        strokeWidth=6,
        strokeLineCap=1,
        strokeLineJoin=1
    ))
    badge.hAlign = 'CENTER'
    return badge


def render_approval_certificate(
    folder_name: str,
    reference: str,
    approved_at: datetime,
    logo_path: Optional[str] = None
) -> bytes:
    """
    Render the Legal Approval certificate.

    Args:
        folder_name: Approved client folder
        reference: Reference number printed on the certificate
        approved_at: Approval time shown on the certificate
        logo_path: Optional logo drawn in the header

    Returns:
        PDF bytes
    """
    styles = _get_styles()

    elements = _logo(logo_path)
    title = ParagraphStyle('ApprovalTitle', parent=styles['Title'], fontSize=18)
    elements.append(Paragraph('LEGAL APPROVAL', title))
    elements.append(Paragraph(f'APPLICATION {APPROVAL_STATUS}', styles['Subtitle']))
    elements.append(Spacer(1, 8*mm))
    elements.append(_approval_badge())
    elements.append(Paragraph('APPROVED', styles['Status']))
    elements.append(Spacer(1, 6*mm))

    elements.extend(_section_heading('APPROVAL DETAILS', styles))
    details = [
        ('CLIENT FOLDER:', folder_name),
        ('APPROVAL DATE:', approved_at.strftime('%A, %d %B %Y at %H:%M')),
        ('APPROVED BY:', APPROVED_BY),
        ('STATUS:', APPROVAL_STATUS),
        ('REFERENCE:', reference),
    ]
    details_table = Table(
        [[Paragraph(f'<b>{label}</b>', styles['Detail']), Paragraph(_text(value), styles['Detail'])]
         for label, value in details],
        colWidths=[40*mm, 140*mm]
    )
    details_table.setStyle(TableStyle([
        ('LEFTPADDING', (0, 0), (-1, -1), 0),
        ('TOPPADDING', (0, 0), (-1, -1), 3),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 3),
    ]))
    elements.append(details_table)
    elements.append(Spacer(1, 8*mm))

    elements.extend(_section_heading('CERTIFICATION', styles))
    body = ParagraphStyle('Certification', parent=styles['Normal'], fontSize=9, leading=12,
                          alignment=TA_JUSTIFY)
    elements.append(Paragraph(CERTIFICATION_TEXT, body))

    return _build_pdf(elements, 'Legal Approval')
