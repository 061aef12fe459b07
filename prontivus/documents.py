"""PDF documents handed to patients: prescriptions, certificates, exam guides.

The writer emits a bare PDF 1.4 file with the built-in Helvetica font so no
rendering dependency is required.  Text is encoded as latin-1 (WinAnsi),
which covers Portuguese accents.
"""

from __future__ import annotations

import textwrap
from datetime import date
from typing import Iterable, List, Optional, Sequence, Tuple

from prontivus.db.models import Appointment, Clinic, Doctor, ExamRequest, Patient, Prescription
from prontivus.errors import DomainValidationError
from prontivus.time_utils import local_today
from prontivus.validators import format_cnpj, format_cpf, mask_cep, mask_phone

__all__ = [
    "render_pdf_from_text",
    "prescription_pdf",
    "medical_certificate_pdf",
    "attendance_declaration_pdf",
    "exam_request_pdf",
]


# A4 portrait in points
PAGE_WIDTH = 595
PAGE_HEIGHT = 842
MARGIN = 56
LINE_HEIGHT = 14
FONT_SIZE = 11
MAX_CHARS_PER_LINE = 88

LINES_PER_PAGE = max(1, int((PAGE_HEIGHT - 2 * MARGIN) // LINE_HEIGHT))

Document = Tuple[str, bytes]


def render_pdf_from_text(text: str, title: str) -> bytes:
    """Render plain text into a paginated PDF byte string."""

    if text is None:
        raise ValueError("text must not be None")
    normalised = text.strip("\n")
    if not normalised:
        raise ValueError("text must not be empty")
    pages = _paginate(_wrap_lines(normalised.splitlines()))
    return _build_pdf(pages, title=title)


def _wrap_lines(lines: Iterable[str]) -> List[str]:
    wrapper = textwrap.TextWrapper(width=MAX_CHARS_PER_LINE, break_long_words=True)
    wrapped: List[str] = []
    for line in lines:
        segments = wrapper.wrap(line) if line.strip() else []
        wrapped.extend(segments or [""])
    return wrapped


def _paginate(lines: Sequence[str]) -> List[List[str]]:
    pages = [list(lines[i : i + LINES_PER_PAGE]) for i in range(0, len(lines), LINES_PER_PAGE)]
    return pages or [[]]


def _pdf_text(value: str) -> bytes:
    escaped = value.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
    return escaped.encode("latin-1", errors="replace")


def _page_stream(lines: List[str]) -> bytes:
    parts = [b"BT", f"/F1 {FONT_SIZE} Tf".encode("ascii"), f"{MARGIN} {PAGE_HEIGHT - MARGIN} Td".encode("ascii")]
    for index, line in enumerate(lines):
        if index:
            parts.append(f"0 -{LINE_HEIGHT} Td".encode("ascii"))
        parts.append(b"(" + _pdf_text(line) + b") Tj")
    parts.append(b"ET")
    return b"\n".join(parts)


def _build_pdf(pages: List[List[str]], *, title: Optional[str] = None) -> bytes:
    # Object ids: 1 catalog, 2 pages, 3 font, 4 info, then page/content pairs.
    page_ids = [5 + 2 * i for i in range(len(pages))]
    objects: dict[int, bytes] = {
        1: b"<< /Type /Catalog /Pages 2 0 R >>",
        2: f"<< /Type /Pages /Kids [{' '.join(f'{pid} 0 R' for pid in page_ids)}] /Count {len(pages)} >>".encode(
            "ascii"
        ),
        3: b"<< /Type /Font /Subtype /Type1 /BaseFont /Helvetica /Encoding /WinAnsiEncoding >>",
        4: b"<< /Title (" + _pdf_text(title or "") + b") /Producer (Prontivus) >>",
    }
    for page_id, lines in zip(page_ids, pages):
        stream = _page_stream(lines)
        objects[page_id] = (
            f"<< /Type /Page /Parent 2 0 R /MediaBox [0 0 {PAGE_WIDTH} {PAGE_HEIGHT}] "
            f"/Contents {page_id + 1} 0 R /Resources << /Font << /F1 3 0 R >> >> >>"
        ).encode("ascii")
        objects[page_id + 1] = (
            f"<< /Length {len(stream)} >>\nstream\n".encode("ascii") + stream + b"\nendstream"
        )

    buffer = bytearray(b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n")
    offsets = []
    for object_id in range(1, len(objects) + 1):
        offsets.append(len(buffer))
        buffer.extend(f"{object_id} 0 obj\n".encode("ascii"))
        buffer.extend(objects[object_id])
        buffer.extend(b"\nendobj\n")

    xref_offset = len(buffer)
    buffer.extend(f"xref\n0 {len(objects) + 1}\n".encode("ascii"))
    buffer.extend(b"0000000000 65535 f \n")
    for offset in offsets:
        buffer.extend(f"{offset:010d} 00000 n \n".encode("ascii"))
    buffer.extend(
        f"trailer\n<< /Size {len(objects) + 1} /Root 1 0 R /Info 4 0 R >>\nstartxref\n{xref_offset}\n%%EOF".encode(
            "ascii"
        )
    )
    return bytes(buffer)


def _br_date(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def _header(clinic: Clinic, title: str) -> List[str]:
    lines = [
        clinic.name.upper(),
        f"CNPJ: {format_cnpj(clinic.cnpj)}",
    ]
    if clinic.phone:
        lines.append(f"Tel: {mask_phone(clinic.phone)}")
    return lines + ["", title.upper(), ""]


def _footer(doctor: Doctor, issued_on: date) -> List[str]:
    return [
        "",
        "",
        f"Emitido em {_br_date(issued_on)}",
        "",
        "______________________________________",
        f"Dr(a). {doctor.name}",
        f"CRM: {doctor.crm}",
    ]


def _patient_lines(patient: Patient) -> List[str]:
    lines = [f"Paciente: {patient.name}"]
    if patient.cpf:
        lines.append(f"CPF: {format_cpf(patient.cpf)}")
    return lines


def _contact_lines(patient: Patient) -> List[str]:
    lines = []
    contact = patient.mobile or patient.phone
    if contact:
        lines.append(f"Telefone: {mask_phone(contact)}")
    address = [part for part in (patient.address, patient.zip_code and f"CEP {mask_cep(patient.zip_code)}") if part]
    if address:
        lines.append("Endereço: " + " - ".join(address))
    return lines


def _filename(prefix: str, ident: str) -> str:
    return f"{prefix}-{ident[:8]}.pdf"


def prescription_pdf(clinic: Clinic, prescription: Prescription) -> Document:
    lines = _header(clinic, "Receituário")
    lines += _patient_lines(prescription.patient) + [""]
    for number, item in enumerate(prescription.items or [], start=1):
        dosage = f" {item['dosage']}" if item.get("dosage") else ""
        lines.append(f"{number}. {item['medication']}{dosage}")
        for key in ("frequency", "duration", "instructions"):
            if item.get(key):
                lines.append(f"   {item[key]}")
        lines.append("")
    if prescription.notes:
        lines += ["Observações:", prescription.notes]
    issued = prescription.created_at.date() if prescription.created_at else local_today()
    lines += _footer(prescription.doctor, issued)
    return _filename("receita", prescription.id), render_pdf_from_text("\n".join(lines), "Receituário")


def medical_certificate_pdf(
    clinic: Clinic,
    patient: Patient,
    doctor: Doctor,
    days: int,
    cid_code: Optional[str] = None,
    issued_on: Optional[date] = None,
) -> Document:
    if days < 1:
        raise DomainValidationError("Certificate must cover at least one day")
    issued_on = issued_on or local_today()
    plural = "dia" if days == 1 else "dias"
    body = (
        f"Atesto, para os devidos fins, que {patient.name} esteve sob meus cuidados "
        f"e necessita de {days} ({plural}) de afastamento de suas atividades a partir de "
        f"{_br_date(issued_on)}."
    )
    lines = _header(clinic, "Atestado médico") + _patient_lines(patient) + ["", body]
    if cid_code:
        lines += ["", f"CID-10: {cid_code}"]
    lines += _footer(doctor, issued_on)
    return _filename("atestado", patient.id), render_pdf_from_text("\n".join(lines), "Atestado médico")


def attendance_declaration_pdf(clinic: Clinic, appointment: Appointment) -> Document:
    start = appointment.starts_at
    body = (
        f"Declaro, para os devidos fins, que {appointment.patient.name} compareceu a esta clínica "
        f"em {_br_date(start.date())}, das {start:%H:%M} às {appointment.ends_at:%H:%M}, "
        "para atendimento médico."
    )
    lines = _header(clinic, "Declaração de comparecimento") + _patient_lines(appointment.patient) + ["", body]
    lines += _footer(appointment.doctor, local_today())
    return (
        _filename("declaracao", appointment.id),
        render_pdf_from_text("\n".join(lines), "Declaração de comparecimento"),
    )


def exam_request_pdf(clinic: Clinic, exam_requests: Sequence[ExamRequest]) -> Document:
    if not exam_requests:
        raise DomainValidationError("No exam requests to print")
    first = exam_requests[0]
    if any(req.patient_id != first.patient_id for req in exam_requests):
        raise DomainValidationError("Exam guide must belong to a single patient")
    lines = _header(clinic, "Solicitação de exames") + _patient_lines(first.patient) + _contact_lines(first.patient) + [""]
    for number, request in enumerate(exam_requests, start=1):
        lines.append(f"{number}. {request.exam_name} ({request.exam_type})")
        if request.justification:
            lines.append(f"   Justificativa: {request.justification}")
    issued = first.created_at.date() if first.created_at else local_today()
    lines += _footer(first.doctor, issued)
    return _filename("exames", first.id), render_pdf_from_text("\n".join(lines), "Solicitação de exames")
