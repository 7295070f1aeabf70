"""
Reporting and Export Module for the Shift Bidding core

Builds assignment and metrics tables for a bid period with pandas and
writes them as Excel (openpyxl) or CSV files. A bid line's schedule can
also be exported as an iCalendar file for personal calendars.
"""

import logging
import re
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
from openpyxl.styles import Font, PatternFill
from sqlalchemy import or_, select
from sqlalchemy.orm import selectinload

from .cycle_expander import cycle_number, expand
from .data_manager import DataManager, NotFoundError, ValidationError
from .metrics_manager import template_from_schedule
from .models import BidLine, BidPeriod, MetricsRecord, Schedule, ScheduleShift, utcnow
from .rank_ledger import natural_key


logger = logging.getLogger(__name__)

REPORT_KINDS = ("assignments", "metrics")
EXPORT_FORMATS = ("excel", "csv")

ASSIGNMENT_COLUMNS = ["Operation", "Line Number", "Group", "Status", "Assigned Officer", "Assigned Date"]

# MetricsResult fields shown in the comparison sheet
METRIC_COLUMNS = {
    "shift_pattern": "Pattern",
    "score": "Score",
    "weekends_on": "Weekends On",
    "total_weekends": "Total Weekends",
    "saturdays_on": "Saturdays On",
    "sundays_on": "Sundays On",
    "blocks_5day": "5-Day Blocks",
    "blocks_4day": "4-Day Blocks",
    "longest_stretch": "Longest Stretch",
    "longest_off_stretch": "Longest Off Stretch",
    "holidays_working": "Holidays Working",
    "holidays_off": "Holidays Off",
    "total_days_worked": "Days Worked",
    "total_hours": "Hours",
}

CALENDAR_PRODID = "-//Shift Bidding//Bid Line Calendar//EN"


def ical_escape(text: Optional[str]) -> str:
    return (text or "").replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,").replace("\n", "\\n")


def ical_filename(operation_name: Optional[str], line_number: str, start_date: date) -> str:
    """<Operation>_Line<N>_Schedule_<YYYYMMDD>.ics with whitespace dropped from the operation"""
    operation = re.sub(r"\s+", "", operation_name or "") or "Unknown"
    return f"{operation}_Line{line_number}_Schedule_{start_date:%Y%m%d}.ics"


def _ical_datetime(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%S")


class ReportGenerator:
    """Builds report tables for a bid period"""

    def __init__(self, data_manager: DataManager):
        self.data_manager = data_manager

    def _period_lines(self, session, bid_period_id: int) -> List[BidLine]:
        if session.get(BidPeriod, bid_period_id) is None:
            raise NotFoundError(f"Bid period {bid_period_id} not found")
        lines = session.scalars(
            select(BidLine)
            .outerjoin(BidLine.schedule)
            .where(or_(BidLine.bid_period_id == bid_period_id, Schedule.bid_period_id == bid_period_id))
            .options(selectinload(BidLine.operation))
        ).all()
        return sorted(lines, key=lambda line: (line.operation.name, natural_key(line.line_number)))

    def create_assignments_dataframe(self, bid_period_id: int) -> pd.DataFrame:
        """One row per bid line, ordered by operation then natural line number"""
        with self.data_manager.session() as session:
            data = [
                {
                    "Operation": line.operation.name,
                    "Line Number": line.line_number,
                    "Group": line.group_name or "",
                    "Status": line.status,
                    "Assigned Officer": line.taken_by or "",
                    "Assigned Date": line.taken_at.strftime("%Y-%m-%d %H:%M") if line.taken_at else "",
                }
                for line in self._period_lines(session, bid_period_id)
            ]
        return pd.DataFrame(data, columns=ASSIGNMENT_COLUMNS)

    def create_metrics_dataframe(self, bid_period_id: int) -> pd.DataFrame:
        """Cached metrics of every line in the period, for side-by-side comparison"""
        columns = ["Operation", "Line Number"] + list(METRIC_COLUMNS.values())
        with self.data_manager.session() as session:
            lines = self._period_lines(session, bid_period_id)
            records = {
                record.bid_line_id: record.payload
                for record in session.scalars(
                    select(MetricsRecord).where(MetricsRecord.bid_line_id.in_([line.id for line in lines]))
                )
            }
            data = []
            for line in lines:
                payload = records.get(line.id)
                if payload is None:
                    continue
                row = {"Operation": line.operation.name, "Line Number": line.line_number}
                for key, label in METRIC_COLUMNS.items():
                    row[label] = payload.get(key)
                data.append(row)
        return pd.DataFrame(data, columns=columns)

    def create_summary(self, bid_period_id: int) -> Dict[str, int]:
        """Line counts per status"""
        df = self.create_assignments_dataframe(bid_period_id)
        counts = df["Status"].value_counts().to_dict() if not df.empty else {}
        return {
            "total": int(len(df)),
            "available": int(counts.get("AVAILABLE", 0)),
            "taken": int(counts.get("TAKEN", 0)),
            "blacked_out": int(counts.get("BLACKED_OUT", 0)),
        }

    def create_calendar(self, bid_line_id: int, stamp: Optional[datetime] = None) -> Tuple[str, str]:
        """
        iCalendar text for a bid line's schedule across its whole bid period.

        Every worked day becomes one VEVENT with floating local times from its
        shift code. Overnight shifts end on the following civil date.

        Returns:
            (default filename, calendar text with CRLF line endings)

        Raises:
            NotFoundError: unknown bid line
            ValidationError: the line has no schedule, or the schedule is incomplete
        """
        cycle_length = self.data_manager.cycle_length
        with self.data_manager.session() as session:
            bid_line = session.scalars(
                select(BidLine)
                .where(BidLine.id == bid_line_id)
                .options(
                    selectinload(BidLine.operation),
                    selectinload(BidLine.schedule).selectinload(Schedule.shifts).selectinload(ScheduleShift.shift_code),
                    selectinload(BidLine.schedule).selectinload(Schedule.bid_period),
                )
            ).first()
            if bid_line is None:
                raise NotFoundError(f"Bid line {bid_line_id} not found")
            if bid_line.schedule is None:
                raise ValidationError(f"Line {bid_line.line_number} has no schedule or bid period to export")

            # The schedule's period anchors the template, as it does for metrics
            period = bid_line.schedule.bid_period
            start_date, num_cycles = period.start_date, period.num_cycles
            template = template_from_schedule(bid_line.schedule, cycle_length)
            operation_name = bid_line.operation.name
            line_number = bid_line.line_number

        dtstamp = (stamp or utcnow()).strftime("%Y%m%dT%H%M%SZ")
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:{CALENDAR_PRODID}",
            "CALSCALE:GREGORIAN",
            f"X-WR-CALNAME:{ical_escape(f'{operation_name} Line {line_number}')}",
        ]
        events = 0
        for day in expand(template, start_date, num_cycles, cycle_length):
            if not day.is_working:
                continue
            shift = day.entry
            midnight = datetime.combine(day.absolute_date, time())
            begin = midnight + timedelta(minutes=shift.begin_minutes)
            end = midnight + timedelta(minutes=shift.end_minutes)
            if shift.is_overnight:
                end += timedelta(days=1)

            cycle = cycle_number(day.absolute_date, start_date, cycle_length)
            description = (f"{shift.category or 'Other'} - {shift.begin_time} to {shift.end_time} "
                           f"({shift.hours_length:g}h)")
            lines += [
                "BEGIN:VEVENT",
                f"UID:line{bid_line_id}-cycle{cycle}-day{day.template_day_index}@shift-bidding",
                f"DTSTAMP:{dtstamp}",
                f"DTSTART:{_ical_datetime(begin)}",
                f"DTEND:{_ical_datetime(end)}",
                "CATEGORIES:Work",
                f"SUMMARY:{ical_escape(shift.code)}",
                f"DESCRIPTION:{ical_escape(description)}",
                f"LOCATION:{ical_escape(operation_name)}",
                "END:VEVENT",
            ]
            events += 1
        lines.append("END:VCALENDAR")

        logger.debug(f"Built calendar for line {line_number} with {events} shift(s)")
        return ical_filename(operation_name, line_number, start_date), "\r\n".join(lines) + "\r\n"

    def export_ical(self, bid_line_id: int, output_path: str) -> bool:
        """
        Write a bid line's calendar. output_path is a file, or an existing
        directory that receives the default filename.

        Raises:
            NotFoundError: unknown bid line
            ValidationError: the line has no schedule to export
        """
        filename, content = self.create_calendar(bid_line_id)
        target = Path(output_path)
        if target.is_dir():
            target = target / filename

        try:
            with open(target, "w", encoding="utf-8", newline="") as f:
                f.write(content)
            logger.info(f"Exported calendar for bid line {bid_line_id} to {target}")
            return True

        except OSError as e:
            logger.error(f"Error exporting calendar to {target}: {e}", exc_info=True)
            return False

    def export_excel(self, kind: str, bid_period_id: int, output_path: str) -> bool:
        """Export a report to Excel, with a summary sheet for assignments"""
        try:
            df = self._dataframe(kind, bid_period_id)
            sheet_name = kind.capitalize()
            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                df.to_excel(writer, sheet_name=sheet_name, index=False)

                if kind == "assignments":
                    summary = self.create_summary(bid_period_id)
                    summary_df = pd.DataFrame(
                        [{"Status": key.replace("_", " ").title(), "Lines": value} for key, value in summary.items()]
                    )
                    summary_df.to_excel(writer, sheet_name='Summary', index=False)

                self._format_excel_worksheets(writer)

            logger.info(f"Exported {kind} for period {bid_period_id} to {output_path}")
            return True

        except Exception as e:
            logger.error(f"Error exporting {kind} to Excel: {e}", exc_info=True)
            return False

    def export_csv(self, kind: str, bid_period_id: int, output_path: str) -> bool:
        try:
            df = self._dataframe(kind, bid_period_id)
            df.to_csv(output_path, index=False)
            logger.info(f"Exported {kind} for period {bid_period_id} to {output_path}")
            return True

        except Exception as e:
            logger.error(f"Error exporting {kind} to CSV: {e}", exc_info=True)
            return False

    def _dataframe(self, kind: str, bid_period_id: int) -> pd.DataFrame:
        if kind == "assignments":
            return self.create_assignments_dataframe(bid_period_id)
        if kind == "metrics":
            return self.create_metrics_dataframe(bid_period_id)
        raise ValidationError(f"Unknown report '{kind}', expected one of {', '.join(REPORT_KINDS)}")

    def _format_excel_worksheets(self, writer):
        """Header styling and column widths on every sheet"""
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        header_font = Font(color="FFFFFF", bold=True)

        for worksheet in writer.sheets.values():
            for cell in worksheet[1]:
                cell.fill = header_fill
                cell.font = header_font

            for column in worksheet.columns:
                max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
                worksheet.column_dimensions[column[0].column_letter].width = min(max_length + 2, 50)


class ExportManager:
    """Manager class for handling all export operations"""

    def __init__(self, data_manager: DataManager):
        self.data_manager = data_manager
        self.report_generator = ReportGenerator(data_manager)

    def export(self, kind: str, format_type: str, bid_period_id: int, output_path: str) -> bool:
        """Export a report in the given format"""
        if kind not in REPORT_KINDS:
            raise ValidationError(f"Unknown report '{kind}', expected one of {', '.join(REPORT_KINDS)}")
        if format_type.lower() == 'excel':
            return self.report_generator.export_excel(kind, bid_period_id, output_path)
        elif format_type.lower() == 'csv':
            return self.report_generator.export_csv(kind, bid_period_id, output_path)
        else:
            raise ValidationError(f"Unsupported format: {format_type}")

    def export_ical(self, bid_line_id: int, output_path: str) -> bool:
        """Export one bid line's schedule as an .ics calendar"""
        return self.report_generator.export_ical(bid_line_id, output_path)

    def get_default_filename(self, kind: str, bid_period_id: int, format_type: str) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        extension = "xlsx" if format_type.lower() == "excel" else format_type.lower()
        return f"bid_period_{bid_period_id}_{kind}_{timestamp}.{extension}"

    def batch_export(self, bid_period_id: int, output_dir: str,
                     formats: Optional[List[str]] = None) -> Dict[str, bool]:
        """Export every report in each format"""
        if formats is None:
            formats = list(EXPORT_FORMATS)

        results = {}
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        for kind in REPORT_KINDS:
            for format_type in formats:
                file_path = output_path / self.get_default_filename(kind, bid_period_id, format_type)
                results[f"{kind}.{format_type}"] = self.export(kind, format_type, bid_period_id, str(file_path))

        return results
