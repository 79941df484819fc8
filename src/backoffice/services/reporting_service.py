from __future__ import annotations

import logging

from openpyxl import Workbook
from openpyxl.styles import Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo

log = logging.getLogger("backoffice.ledger")


class ReportingService:
    def __init__(self, repo, accounting, balances):
        self.repo = repo
        self.accounting = accounting
        self.balances = balances

    def export_ledger_excel(self, tenant_id: int, path: str) -> None:
        wb = Workbook()

        def money(cell):
            cell.number_format = "#,##0.00"

        def bold_row(ws, r):
            for c in ws[r]:
                c.font = Font(bold=True)

        def set_widths(ws, widths: dict[str, int]):
            for col, w in widths.items():
                ws.column_dimensions[col].width = w

        def add_table(ws, name: str, start_row: int, start_col: int, end_row: int, end_col: int):
            ref = f"{get_column_letter(start_col)}{start_row}:{get_column_letter(end_col)}{end_row}"
            tab = Table(displayName=name, ref=ref)
            tab.tableStyleInfo = TableStyleInfo(
                name="TableStyleMedium9",
                showRowStripes=True,
                showColumnStripes=False,
            )
            ws.add_table(tab)

        accounts = {a.id: a for a in self.repo.list_accounts(tenant_id)}

        # -------- 1) Trial Balance --------
        ws = wb.active
        ws.title = "Trial Balance"
        ws.append(["Code", "Account", "Type", "Subtype", "Debits", "Credits", "Balance"])
        bold_row(ws, 1)

        rows = self.accounting.trial_balance(tenant_id)
        for i, r in enumerate(rows, start=2):
            ws.append([r.code, r.name, r.type, r.subtype or "", r.debits, r.credits, r.balance])
            for col in "EFG":
                money(ws[f"{col}{i}"])

        total_row = len(rows) + 2
        ws.append(["", "Total", "", "", round(sum(r.debits for r in rows), 2), round(sum(r.credits for r in rows), 2), ""])
        bold_row(ws, total_row)
        money(ws[f"E{total_row}"])
        money(ws[f"F{total_row}"])

        ws.freeze_panes = "A2"
        set_widths(ws, {"A": 8, "B": 30, "C": 12, "D": 20, "E": 16, "F": 16, "G": 16})
        if rows:
            add_table(ws, "TrialBalance", 1, 1, len(rows) + 1, 7)

        # -------- 2) Transactions --------
        ws2 = wb.create_sheet("Transactions")
        ws2.append(["Number", "Date", "Description", "Status", "Account", "Debit", "Credit", "Return ID", "Reverses"])
        bold_row(ws2, 1)

        page = self.accounting.list_transactions(tenant_id, page=1, limit=500)
        pages = page["pagination"]["pages"]
        txns = list(page["transactions"])
        for n in range(2, pages + 1):
            txns.extend(self.accounting.list_transactions(tenant_id, page=n, limit=500)["transactions"])

        out_row = 2
        for t in reversed(txns):
            for line in t.lines:
                acc = accounts.get(line.account_id)
                ws2.append([
                    t.transaction_number, t.date, t.description, t.status,
                    f"{acc.code} {acc.name}" if acc else str(line.account_id),
                    line.debit or None, line.credit or None,
                    t.order_return_id, t.reverses_transaction_id,
                ])
                money(ws2[f"F{out_row}"])
                money(ws2[f"G{out_row}"])
                out_row += 1

        ws2.freeze_panes = "A2"
        set_widths(ws2, {"A": 18, "B": 12, "C": 40, "D": 12, "E": 30, "F": 14, "G": 14, "H": 10, "I": 10})
        if ws2.max_row >= 2:
            add_table(ws2, "LedgerLines", 1, 1, ws2.max_row, 9)

        # -------- 3) Supplier Balances --------
        ws3 = wb.create_sheet("Supplier Balances")
        ws3.append(["Supplier", "Opening", "Invoices", "Paid", "Payable", "Advance", "Status"])
        bold_row(ws3, 1)
        for i, b in enumerate(self.balances.get_all_supplier_balances(tenant_id), start=2):
            ws3.append([b.supplier_name, b.opening_balance, b.total_invoices, b.total_paid, b.payable, b.advance, b.status])
            for col in "BCDEF":
                money(ws3[f"{col}{i}"])
        set_widths(ws3, {"A": 28, "B": 14, "C": 14, "D": 14, "E": 14, "F": 14, "G": 12})

        wb.save(path)
        log.info("ledger_exported tenant=%s path=%s transactions=%s", tenant_id, path, len(txns))
