"""
Reporting and Export Module for the Duty Scheduler

Handles PDF, Excel, and CSV exports of distribution results, roster
fairness snapshots and selection occasion turn orders.
"""

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer, PageBreak
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from openpyxl.styles import PatternFill, Font
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterable
import logging

from .data_manager import DataManager, SelectionOccasion, WorkInstance
from .fairness import FairnessDistribution
from .scheduler_logic import DistributionResult

REPORT_DISTRIBUTION = "distribution"
REPORT_FAIRNESS = "fairness"
REPORT_TURN_ORDER = "turn_order"

FILE_EXTENSIONS = {"pdf": "pdf", "excel": "xlsx", "csv": "csv"}

HEADER_TABLE_STYLE = [
    ('BACKGROUND', (0, 0), (-1, 0), colors.grey),
    ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
    ('ALIGN', (0, 0), (-1, -1), 'CENTER'),
    ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
    ('FONTSIZE', (0, 0), (-1, 0), 10),
    ('BOTTOMPADDING', (0, 0), (-1, 0), 12),
    ('BACKGROUND', (0, 1), (-1, -1), colors.beige),
    ('GRID', (0, 0), (-1, -1), 1, colors.black),
    ('FONTSIZE', (0, 1), (-1, -1), 8),
]


class ReportGenerator:
    """Main class for generating reports and exports"""

    def __init__(self, data_manager: DataManager):
        self.data_manager = data_manager
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        """Setup custom report styles"""
        self.styles.add(ParagraphStyle(
            name='CustomTitle',
            parent=self.styles['Heading1'],
            fontSize=18,
            spaceAfter=30,
            alignment=1  # Center alignment
        ))

        self.styles.add(ParagraphStyle(
            name='CustomHeading',
            parent=self.styles['Heading2'],
            fontSize=14,
            spaceAfter=12
        ))

    def _document(self, output_path: str) -> SimpleDocTemplate:
        return SimpleDocTemplate(
            output_path,
            pagesize=landscape(A4),
            rightMargin=0.5*inch,
            leftMargin=0.5*inch,
            topMargin=0.5*inch,
            bottomMargin=0.5*inch
        )

    @staticmethod
    def _dataframe_table(df: pd.DataFrame) -> Table:
        """Render a DataFrame as a styled reportlab table"""
        data = [list(df.columns)] + [["" if pd.isna(v) else str(v) for v in row] for row in df.itertuples(index=False)]
        table = Table(data, repeatRows=1)
        table.setStyle(TableStyle(HEADER_TABLE_STYLE))
        return table

    def _member_names(self) -> Dict[str, str]:
        return {member.id: member.display_name for member in self.data_manager.get_members()}

    # Distribution results
    def _create_assignment_dataframe(self, result: DistributionResult,
                                     instances: Optional[Iterable[WorkInstance]] = None) -> pd.DataFrame:
        """One row per instance in the distribution, chronological"""
        if instances is None:
            instances = self.data_manager.get_instances_by_ids(result.assignments.keys())
        by_id = {instance.id: instance for instance in instances}
        names = self._member_names()
        names.update({member_id: stats["name"] for member_id, stats in result.statistics.items()})

        rows = []
        for instance_id, member_id in result.assignments.items():
            instance = by_id.get(instance_id)
            rows.append({
                'Instance': instance_id,
                'Name': instance.name if instance else '',
                'Scheduled': instance.scheduled_at.strftime('%Y-%m-%d %H:%M') if instance else '',
                'Assigned To': names.get(member_id, member_id) if member_id else 'UNASSIGNED',
                'Points': result.points_awarded.get(instance_id, 0.0),
                'Holiday': instance_id in result.holiday_instance_ids,
                '_sort': (instance.scheduled_at, instance_id) if instance else (datetime.max, instance_id)
            })
        rows.sort(key=lambda row: row['_sort'])
        df = pd.DataFrame(rows, columns=['Instance', 'Name', 'Scheduled', 'Assigned To', 'Points', 'Holiday', '_sort'])
        return df.drop(columns=['_sort'])

    def _create_member_summary_dataframe(self, result: DistributionResult) -> pd.DataFrame:
        data = []
        for member_id, stats in result.statistics.items():
            data.append({
                'Member ID': member_id,
                'Name': stats['name'],
                'Shifts': stats['shifts'],
                'Points This Batch': round(stats['points'], 1),
                'Initial Score': round(stats['initial_score'], 1),
                'Final Score': round(stats['final_score'], 1)
            })
        return pd.DataFrame(data)

    def _create_escalation_dataframe(self, result: DistributionResult) -> pd.DataFrame:
        data = [{
            'Instance': escalation.instance_id,
            'Reason': escalation.reason,
            'Scheduled': escalation.scheduled_at.strftime('%Y-%m-%d %H:%M') if escalation.scheduled_at else '',
            'Message': escalation.message
        } for escalation in result.escalations]
        return pd.DataFrame(data, columns=['Instance', 'Reason', 'Scheduled', 'Message'])

    def _create_distribution_overview(self, result: DistributionResult) -> Table:
        """Create summary table of a distribution run"""
        data = [
            ['Metric', 'Value'],
            ['Status', 'SUCCESS' if result.success else 'NEEDS ATTENTION'],
            ['Instances', str(len(result.assignments))],
            ['Unassigned', str(len(result.unassigned_instance_ids))],
            ['Fairness Index', f"{result.fairness_index:.1f}"],
            ['Limit Warnings', str(len(result.limit_warnings))],
            ['Message', result.message]
        ]
        table = Table(data, colWidths=[2*inch, 5*inch])
        table.setStyle(TableStyle([
            ('BACKGROUND', (0, 0), (-1, 0), colors.lightblue),
            ('TEXTCOLOR', (0, 0), (-1, 0), colors.black),
            ('ALIGN', (0, 0), (-1, -1), 'LEFT'),
            ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
            ('FONTSIZE', (0, 0), (-1, -1), 10),
            ('GRID', (0, 0), (-1, -1), 1, colors.black),
            ('VALIGN', (0, 0), (-1, -1), 'MIDDLE'),
        ]))
        return table

    def export_distribution_pdf(self, result: DistributionResult, output_path: str,
                                instances: Optional[Iterable[WorkInstance]] = None) -> bool:
        """Export a distribution run to PDF"""
        try:
            doc = self._document(output_path)
            story = [
                Paragraph("Duty Distribution", self.styles['CustomTitle']),
                self._create_distribution_overview(result),
                Spacer(1, 20),
                Paragraph("Assignments", self.styles['CustomHeading']),
                self._dataframe_table(self._create_assignment_dataframe(result, instances)),
                PageBreak(),
                Paragraph("Member Summary", self.styles['CustomHeading']),
                self._dataframe_table(self._create_member_summary_dataframe(result)),
            ]

            if result.escalations:
                story.append(Spacer(1, 20))
                story.append(Paragraph("Needs Manual Assignment", self.styles['CustomHeading']))
                story.append(self._dataframe_table(self._create_escalation_dataframe(result)))

            if result.limit_warnings:
                story.append(Spacer(1, 20))
                story.append(Paragraph("Limit Warnings", self.styles['CustomHeading']))
                for warning in result.limit_warnings:
                    story.append(Paragraph(f"• {warning}", self.styles['Normal']))

            doc.build(story)
            return True

        except Exception as e:
            logging.error(f"Error creating distribution PDF: {e}", exc_info=True)
            return False

    def export_distribution_excel(self, result: DistributionResult, output_path: str,
                                  instances: Optional[Iterable[WorkInstance]] = None) -> bool:
        """Export a distribution run to Excel with summary and escalation sheets"""
        try:
            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                self._create_assignment_dataframe(result, instances).to_excel(writer, sheet_name='Assignments', index=False)
                self._create_member_summary_dataframe(result).to_excel(writer, sheet_name='Members', index=False)
                self._create_escalation_dataframe(result).to_excel(writer, sheet_name='Escalations', index=False)
                if result.limit_warnings:
                    pd.DataFrame({'Warning': result.limit_warnings}).to_excel(writer, sheet_name='Limit Warnings', index=False)
                self._format_excel_worksheets(writer)
            return True

        except Exception as e:
            logging.error(f"Error exporting distribution to Excel: {e}", exc_info=True)
            return False

    def export_distribution_csv(self, result: DistributionResult, output_path: str,
                                instances: Optional[Iterable[WorkInstance]] = None) -> bool:
        """Export the assignment map to CSV format"""
        try:
            self._create_assignment_dataframe(result, instances).to_csv(output_path, index=False)
            return True

        except Exception as e:
            logging.error(f"Error exporting distribution to CSV: {e}", exc_info=True)
            return False

    # Fairness snapshots
    def _create_fairness_dataframe(self, distribution: FairnessDistribution) -> pd.DataFrame:
        data = []
        for member in distribution.members:
            flag = member.deviation_flag or {}
            data.append({
                'Member ID': member.member_id,
                'Name': member.display_name,
                'Points': round(member.total_points, 1),
                'Tasks': member.tasks_completed,
                'Share %': member.percentage_of_total,
                'Fairness Score': member.fairness_score,
                'Deviation': member.deviation_from_average,
                'Severity': flag.get('severity', 'none'),
                'Trend': member.trend
            })
        return pd.DataFrame(data)

    def _create_fairness_overview_dataframe(self, distribution: FairnessDistribution) -> pd.DataFrame:
        period_start = distribution.period_start.strftime('%Y-%m-%d') if distribution.period_start else 'All history'
        return pd.DataFrame([
            {'Metric': 'Period', 'Value': f"{period_start} to {distribution.period_end:%Y-%m-%d}"},
            {'Metric': 'Members', 'Value': distribution.member_count},
            {'Metric': 'Total Points', 'Value': round(distribution.total_points, 1)},
            {'Metric': 'Total Tasks', 'Value': distribution.total_tasks},
            {'Metric': 'Average Points', 'Value': distribution.average_points_per_member},
            {'Metric': 'Fairness Index', 'Value': distribution.fairness_index},
            {'Metric': 'Gini Coefficient', 'Value': distribution.gini_coefficient},
        ])

    def export_fairness_pdf(self, distribution: FairnessDistribution, output_path: str) -> bool:
        try:
            doc = self._document(output_path)
            story = [
                Paragraph("Workload Fairness", self.styles['CustomTitle']),
                self._dataframe_table(self._create_fairness_overview_dataframe(distribution)),
                Spacer(1, 20),
                Paragraph("Members", self.styles['CustomHeading']),
                self._dataframe_table(self._create_fairness_dataframe(distribution)),
            ]
            doc.build(story)
            return True

        except Exception as e:
            logging.error(f"Error creating fairness PDF: {e}", exc_info=True)
            return False

    def export_fairness_excel(self, distribution: FairnessDistribution, output_path: str) -> bool:
        try:
            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                self._create_fairness_dataframe(distribution).to_excel(writer, sheet_name='Members', index=False)
                self._create_fairness_overview_dataframe(distribution).to_excel(writer, sheet_name='Overview', index=False)
                self._format_excel_worksheets(writer)
            return True

        except Exception as e:
            logging.error(f"Error exporting fairness to Excel: {e}", exc_info=True)
            return False

    def export_fairness_csv(self, distribution: FairnessDistribution, output_path: str) -> bool:
        try:
            self._create_fairness_dataframe(distribution).to_csv(output_path, index=False)
            return True

        except Exception as e:
            logging.error(f"Error exporting fairness to CSV: {e}", exc_info=True)
            return False

    # Turn orders
    def _create_turn_order_dataframe(self, occasion: SelectionOccasion) -> pd.DataFrame:
        data = [{
            'Order': turn.order,
            'Member ID': turn.member_id,
            'Name': turn.display_name,
            'Quota': turn.quota if turn.quota is not None else '',
            'Status': turn.status,
            'Picks': turn.selections_count,
            'Points Picked': round(turn.points_picked, 1)
        } for turn in sorted(occasion.computed_turn_order, key=lambda t: t.order)]
        return pd.DataFrame(data, columns=['Order', 'Member ID', 'Name', 'Quota', 'Status', 'Picks', 'Points Picked'])

    def _create_selection_dataframe(self, occasion: SelectionOccasion) -> pd.DataFrame:
        data = [{
            'Turn': entry.turn_order,
            'Member ID': entry.member_id,
            'Instance': entry.instance_id,
            'Points': entry.points_value,
            'Selected At': entry.selected_at.strftime('%Y-%m-%d %H:%M') if entry.selected_at else ''
        } for entry in occasion.selections]
        return pd.DataFrame(data, columns=['Turn', 'Member ID', 'Instance', 'Points', 'Selected At'])

    def export_turn_order_pdf(self, occasion: SelectionOccasion, output_path: str) -> bool:
        try:
            doc = self._document(output_path)
            title = occasion.name or occasion.id
            story = [
                Paragraph(f"Turn Order - {title}", self.styles['CustomTitle']),
                Paragraph(f"Algorithm: {occasion.algorithm} | State: {occasion.state}", self.styles['Normal']),
                Spacer(1, 20),
                self._dataframe_table(self._create_turn_order_dataframe(occasion)),
            ]
            if occasion.selections:
                story.append(Spacer(1, 20))
                story.append(Paragraph("Selections", self.styles['CustomHeading']))
                story.append(self._dataframe_table(self._create_selection_dataframe(occasion)))
            doc.build(story)
            return True

        except Exception as e:
            logging.error(f"Error creating turn order PDF: {e}", exc_info=True)
            return False

    def export_turn_order_excel(self, occasion: SelectionOccasion, output_path: str) -> bool:
        try:
            with pd.ExcelWriter(output_path, engine='openpyxl') as writer:
                self._create_turn_order_dataframe(occasion).to_excel(writer, sheet_name='Turn Order', index=False)
                self._create_selection_dataframe(occasion).to_excel(writer, sheet_name='Selections', index=False)
                self._format_excel_worksheets(writer)
            return True

        except Exception as e:
            logging.error(f"Error exporting turn order to Excel: {e}", exc_info=True)
            return False

    def export_turn_order_csv(self, occasion: SelectionOccasion, output_path: str) -> bool:
        try:
            self._create_turn_order_dataframe(occasion).to_csv(output_path, index=False)
            return True

        except Exception as e:
            logging.error(f"Error exporting turn order to CSV: {e}", exc_info=True)
            return False

    def _format_excel_worksheets(self, writer):
        """Header fill and column widths on every sheet"""
        header_fill = PatternFill(start_color="366092", end_color="366092", fill_type="solid")
        header_font = Font(color="FFFFFF", bold=True)

        for worksheet in writer.sheets.values():
            for cell in worksheet[1]:
                cell.fill = header_fill
                cell.font = header_font

            for column in worksheet.columns:
                max_length = max((len(str(cell.value)) for cell in column if cell.value is not None), default=0)
                worksheet.column_dimensions[column[0].column_letter].width = min(max_length + 2, 50)

    def create_distribution_summary(self, result: DistributionResult) -> str:
        """Text summary of a distribution run for the console"""
        lines = [
            "DISTRIBUTION SUMMARY",
            f"• Status: {'SUCCESS' if result.success else 'NEEDS ATTENTION'}",
            f"• Message: {result.message}",
            f"• Fairness Index: {result.fairness_index:.1f}",
            "",
            "Members:"
        ]
        for stats in sorted(result.statistics.values(), key=lambda s: s['name'].casefold()):
            lines.append(
                f"• {stats['name']}: {stats['shifts']} shifts, +{stats['points']:.1f} pts "
                f"(score {stats['initial_score']:.1f} -> {stats['final_score']:.1f})"
            )

        if result.escalations:
            lines.append("")
            lines.append("NEEDS MANUAL ASSIGNMENT:")
            for escalation in result.escalations:
                lines.append(f"• {escalation.instance_id}: {escalation.message}")

        if result.limit_warnings:
            lines.append("")
            lines.append("LIMIT WARNINGS:")
            lines.extend(f"• {warning}" for warning in result.limit_warnings)

        return "\n".join(lines)


class ExportManager:
    """Manager class for handling all export operations"""

    def __init__(self, data_manager: DataManager):
        self.data_manager = data_manager
        self.report_generator = ReportGenerator(data_manager)

    def export_report(self, report_type: str, format_type: str, output_path: str, subject: Any) -> bool:
        """
        Export one report in the requested format.

        Args:
            report_type: "distribution", "fairness" or "turn_order"
            format_type: "pdf", "excel" or "csv"
            output_path: Target file
            subject: DistributionResult, FairnessDistribution or SelectionOccasion
        """
        format_type = format_type.lower()
        if format_type not in FILE_EXTENSIONS:
            raise ValueError(f"Unsupported format: {format_type}")

        exporters = {
            REPORT_DISTRIBUTION: {
                'pdf': self.report_generator.export_distribution_pdf,
                'excel': self.report_generator.export_distribution_excel,
                'csv': self.report_generator.export_distribution_csv,
            },
            REPORT_FAIRNESS: {
                'pdf': self.report_generator.export_fairness_pdf,
                'excel': self.report_generator.export_fairness_excel,
                'csv': self.report_generator.export_fairness_csv,
            },
            REPORT_TURN_ORDER: {
                'pdf': self.report_generator.export_turn_order_pdf,
                'excel': self.report_generator.export_turn_order_excel,
                'csv': self.report_generator.export_turn_order_csv,
            },
        }
        if report_type not in exporters:
            raise ValueError(f"Unsupported report: {report_type}")
        return exporters[report_type][format_type](subject, output_path)

    def get_default_filename(self, report_type: str, format_type: str) -> str:
        """Generate default filename for export"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"duty_{report_type}_{timestamp}.{FILE_EXTENSIONS[format_type.lower()]}"

    def batch_export(self, report_type: str, subject: Any, output_dir: str,
                     formats: List[str] = None) -> Dict[str, bool]:
        """Export one report in multiple formats"""
        if formats is None:
            formats = ['pdf', 'excel', 'csv']

        results = {}
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)

        for format_type in formats:
            file_path = output_path / self.get_default_filename(report_type, format_type)
            try:
                results[format_type] = self.export_report(report_type, format_type, str(file_path), subject)
            except ValueError as e:
                logging.error(f"Error exporting {format_type}: {e}", exc_info=True)
                results[format_type] = False

        return results
