"""
Excel Export Utilities using Pandas
===================================

Workbook exports for loan schedules and the trial balance. Functions
return the ``.xlsx`` bytes; callers decide whether to stream them over
HTTP, attach them to an email or write them to disk.
"""

from io import BytesIO

import pandas as pd
from openpyxl.styles import Alignment, Font, PatternFill

from cooperative.utils.money import MoneyCalculator

HEADER_FILL = PatternFill(start_color='1F6F50', end_color='1F6F50', fill_type='solid')
HEADER_FONT = Font(bold=True, color='FFFFFF', size=11)
TOTALS_FILL = PatternFill(start_color='E2F0E8', end_color='E2F0E8', fill_type='solid')
TOTALS_FONT = Font(bold=True, size=11)
MONEY_FORMAT = '#,##0.00'


def _style_sheet(worksheet, df, money_columns, widths, header_row=1, totals=True):
    for col_num in range(1, len(df.columns) + 1):
        cell = worksheet.cell(row=header_row, column=col_num)
        cell.fill = HEADER_FILL
        cell.font = HEADER_FONT
        cell.alignment = Alignment(horizontal='center', vertical='center')

    last_row = header_row + len(df)

    if totals:
        for col_num in range(1, len(df.columns) + 1):
            cell = worksheet.cell(row=last_row, column=col_num)
            cell.fill = TOTALS_FILL
            cell.font = TOTALS_FONT

    for row in range(header_row + 1, last_row + 1):
        for col_num in money_columns:
            worksheet.cell(row=row, column=col_num).number_format = MONEY_FORMAT

    for letter, width in widths.items():
        worksheet.column_dimensions[letter].width = width


def _add_title(worksheet, title, subtitle, last_column):
    worksheet.insert_rows(1, 3)
    worksheet.merge_cells(f'A1:{last_column}1')
    worksheet.merge_cells(f'A2:{last_column}2')

    title_cell = worksheet['A1']
    title_cell.value = title
    title_cell.font = Font(bold=True, size=16, color='1F6F50')
    title_cell.alignment = Alignment(horizontal='center')

    subtitle_cell = worksheet['A2']
    subtitle_cell.value = subtitle
    subtitle_cell.alignment = Alignment(horizontal='center')


def export_schedule_excel(loan):
    """
    Export a disbursed loan's installment schedule

    Returns:
        bytes: The workbook
    """
    rows = []
    for installment in loan.installments.order_by('installment_number'):
        rows.append({
            'No': installment.installment_number,
            'Due Date': installment.due_date,
            'Principal': float(installment.principal_amount),
            'Interest': float(installment.interest_amount),
            'Installment': float(installment.total_amount),
            'Paid': float(installment.paid_amount),
            'Balance After': float(installment.remaining_principal),
            'Status': installment.get_status_display(),
        })

    df = pd.DataFrame(rows, columns=[
        'No', 'Due Date', 'Principal', 'Interest', 'Installment', 'Paid', 'Balance After', 'Status'
    ])

    totals_row = pd.DataFrame([{
        'No': '',
        'Due Date': 'TOTAL',
        'Principal': df['Principal'].sum(),
        'Interest': df['Interest'].sum(),
        'Installment': df['Installment'].sum(),
        'Paid': df['Paid'].sum(),
        'Balance After': '',
        'Status': '',
    }])
    df = pd.concat([df, totals_row], ignore_index=True)

    output = BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        df.to_excel(writer, sheet_name='Schedule', index=False)
        worksheet = writer.sheets['Schedule']

        _style_sheet(
            worksheet, df,
            money_columns=[3, 4, 5, 6, 7],
            widths={'A': 6, 'B': 14, 'C': 18, 'D': 16, 'E': 18, 'F': 18, 'G': 18, 'H': 22},
        )
        _add_title(
            worksheet,
            f'LOAN SCHEDULE {loan.loan_number}',
            f'{loan.member_display} | Principal {MoneyCalculator.format_currency(loan.principal_amount)} | '
            f'{loan.annual_interest_rate}% p.a. | {loan.tenure_months} months',
            'H',
        )

    return output.getvalue()


def export_trial_balance_excel(report_data):
    """
    Export Trial Balance to Excel

    Args:
        report_data: Result of ``get_trial_balance``

    Returns:
        bytes: The workbook
    """
    rows = []
    for item in report_data['rows']:
        rows.append({
            'Code': item['account'].code,
            'Account Name': item['account'].name,
            'Category': item['account'].get_category_display(),
            'Debit': float(item['debit']),
            'Credit': float(item['credit']),
        })

    df = pd.DataFrame(rows, columns=['Code', 'Account Name', 'Category', 'Debit', 'Credit'])

    totals_row = pd.DataFrame([{
        'Code': '',
        'Account Name': 'TOTAL',
        'Category': '',
        'Debit': float(report_data['total_debits']),
        'Credit': float(report_data['total_credits']),
    }])
    df = pd.concat([df, totals_row], ignore_index=True)

    as_of = report_data.get('as_of')
    status = 'BALANCED' if report_data['is_balanced'] else 'NOT BALANCED'

    output = BytesIO()
    with pd.ExcelWriter(output, engine='openpyxl') as writer:
        df.to_excel(writer, sheet_name='Trial Balance', index=False)
        worksheet = writer.sheets['Trial Balance']

        _style_sheet(
            worksheet, df,
            money_columns=[4, 5],
            widths={'A': 12, 'B': 40, 'C': 16, 'D': 18, 'E': 18},
        )
        _add_title(
            worksheet,
            'TRIAL BALANCE',
            f'As of {as_of:%d %B %Y} | {status}' if as_of else f'All posted journals | {status}',
            'E',
        )
        worksheet['A2'].font = Font(bold=True, color='059669' if report_data['is_balanced'] else 'DC2626')

    return output.getvalue()
