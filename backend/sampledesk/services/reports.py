from __future__ import annotations

import logging
import re
from io import BytesIO
from typing import TYPE_CHECKING, Optional
from zoneinfo import ZoneInfo

from openpyxl import Workbook
from openpyxl.styles import Font

from backend.sampledesk.models import (
    ExportRow,
    FileAttachment,
    ParticipantRecord,
    SampleRecord,
    SampleStatus,
)
from backend.sampledesk.services.lifecycle import (
    STATUS_LABELS,
    format_date,
    local_date,
    short_id,
)

if TYPE_CHECKING:
    from backend.sampledesk.observability import MetricsRegistry
    from backend.sampledesk.services.transport import Messenger
    from backend.sampledesk.store import InMemoryStore

logger = logging.getLogger("sampledesk.reports")

XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
EXPORT_SHEET_TITLE = "Samples"
EXPORT_COLUMNS = (
    "Agent",
    "Status",
    "Customer",
    "Contract closed",
    "Received date",
    "Follow-up date",
    "Sample ID",
    "Client feedback",
)


def contract_label(value: Optional[bool]) -> str:
    if value is None:
        return "n/a"
    return "yes" if value else "no"


def compose_final_report(participant: ParticipantRecord, sample: SampleRecord) -> str:
    lines = [
        "*Sample devolution report*",
        "",
        f"*Agent:* {participant.name}",
        f"*Sample ID:* {short_id(sample.id)}",
        f"*Client:* {sample.customer_name or 'not provided'}",
        f"*Contract closed:* {contract_label(sample.contract_closed)}",
    ]
    if sample.client_feedback:
        lines.append(f"*Client feedback:* {sample.client_feedback}")
    if sample.follow_up_date:
        lines.append(f"*Follow-up date:* {format_date(sample.follow_up_date)}")
    lines.append("")
    lines.append(f"*Final status:* {STATUS_LABELS.get(sample.status, sample.status.value)}")
    return "\n".join(lines)


def build_samples_export(rows: list[ExportRow], zone: ZoneInfo) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = EXPORT_SHEET_TITLE
    sheet.append(EXPORT_COLUMNS)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    sheet.freeze_panes = "A2"
    for row in rows:
        sample = row.sample
        sheet.append(
            [
                row.agent_name,
                STATUS_LABELS.get(sample.status, sample.status.value),
                sample.customer_name or "-",
                contract_label(sample.contract_closed),
                format_date(local_date(sample.received_at_utc, zone)),
                format_date(sample.follow_up_date),
                sample.id,
                sample.client_feedback or "-",
            ]
        )
        # Free text typed by agents is stored as text, never as a formula.
        for cell in sheet[sheet.max_row]:
            if cell.data_type == "f":
                cell.data_type = "s"
    for column in sheet.columns:
        width = max(len(str(cell.value)) for cell in column)
        sheet.column_dimensions[column[0].column_letter].width = min(width + 2, 60)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def export_filename(label: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", label).strip("_") or "samples"
    return f"report_{slug}.xlsx"


class ReportDispatcher:
    def __init__(
        self,
        *,
        store: "InMemoryStore",
        messenger: "Messenger",
        zone: ZoneInfo,
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.messenger = messenger
        self.zone = zone
        self.metrics = metrics

    def send_final_report(
        self, participant: Optional[ParticipantRecord], sample: Optional[SampleRecord]
    ) -> bool:
        contact = self.store.get_config().oversight_contact
        if not contact:
            logger.error("final_report_skipped reason=no_oversight_contact")
            return False
        if participant is None or sample is None:
            logger.error("final_report_skipped reason=record_missing")
            return False
        sent = self.messenger.text(contact, compose_final_report(participant, sample))
        if sent:
            logger.info("final_report_sent sample=%s to=%s", short_id(sample.id), contact)
            if self.metrics:
                self.metrics.increment("final_reports_sent")
        return sent

    def export(
        self,
        *,
        label: str,
        status: Optional[SampleStatus] = None,
        owner_id: Optional[str] = None,
    ) -> FileAttachment:
        rows = self.store.report_rows(status=status, owner_id=owner_id)
        return FileAttachment(
            filename=export_filename(label),
            caption=f"Here is the {label} report ({len(rows)} samples).",
            content_type=XLSX_CONTENT_TYPE,
            content=build_samples_export(rows, self.zone),
        )
