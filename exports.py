import csv
import io
from datetime import datetime

from models import TransferRecord, WalletBalance


def balance_to_csv(balance: WalletBalance) -> bytes:
    """Export a wallet balance to CSV."""
    out = io.StringIO()
    w = csv.writer(out)

    w.writerow(["WALLET PORTFOLIO BALANCE"])
    w.writerow(["Generated", datetime.now().strftime("%Y-%m-%d %H:%M:%S")])
    w.writerow([])

    # ── Summary ───────────────────────────────────────────────────────
    w.writerow(["SUMMARY"])
    w.writerow(["Address", balance.address])
    w.writerow(["Native Balance", balance.native_balance])
    w.writerow(["Native Value (USD)", f"${balance.native_value_usd:,.2f}"])
    w.writerow(["Total Value (USD)", f"${balance.total_value_usd:,.2f}"])
    w.writerow(["Last Updated", balance.last_updated.isoformat()])
    w.writerow([])

    # ── Holdings ──────────────────────────────────────────────────────
    w.writerow(["HOLDINGS (Sorted by Value)"])
    w.writerow(["Symbol", "Name", "Balance", "Decimals", "Value (USD)", "Token Address"])
    for t in balance.tokens:
        w.writerow([
            t.symbol, t.name, t.balance, t.decimals,
            f"${t.value_usd:,.2f}", t.token_address,
        ])

    return out.getvalue().encode("utf-8")


def transactions_to_csv(records: list[TransferRecord]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow([
        "Hash", "Chain", "Type", "From Token", "To Token", "Amount",
        "Value (USD)", "Gas Used", "Gas Price", "Timestamp", "Status",
    ])
    for r in records:
        w.writerow([
            r.hash, r.chain, r.type.value, r.from_token or "", r.to_token or "",
            r.amount, f"{r.value_usd:.2f}",
            r.gas_used if r.gas_used is not None else "N/A",
            r.gas_price if r.gas_price is not None else "N/A",
            r.timestamp.isoformat(), r.status.value,
        ])
    return out.getvalue().encode("utf-8")


def _styles():
    from openpyxl.styles import Font, PatternFill

    return {
        "accent": PatternFill(start_color="6c5ce7", end_color="6c5ce7", fill_type="solid"),
        "dark": PatternFill(start_color="1a1a2e", end_color="1a1a2e", fill_type="solid"),
        "white_bold": Font(bold=True, color="FFFFFF"),
        "bold": Font(bold=True),
    }


def _write_header(ws, headers: list[str], styles: dict, row: int = 1) -> None:
    for col, h in enumerate(headers, 1):
        cell = ws.cell(row=row, column=col, value=h)
        cell.font = styles["white_bold"]
        cell.fill = styles["dark"]


def _autofit(*sheets) -> None:
    for sheet in sheets:
        for col in sheet.columns:
            max_len = max(len(str(cell.value or "")) for cell in col)
            sheet.column_dimensions[col[0].column_letter].width = min(max_len + 3, 45)


def _save(wb) -> bytes:
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def balance_to_excel(balance: WalletBalance) -> bytes:
    """Summary sheet plus one row per holding."""
    import openpyxl
    from openpyxl.styles import Alignment, Font

    styles = _styles()
    wb = openpyxl.Workbook()

    ws = wb.active
    ws.title = "Summary"
    ws.merge_cells("A1:E1")
    ws["A1"] = "Wallet Portfolio Balance"
    ws["A1"].font = Font(bold=True, size=16, color="FFFFFF")
    ws["A1"].fill = styles["accent"]
    ws["A1"].alignment = Alignment(horizontal="center")

    rows = [
        ("Address", balance.address),
        ("Generated", datetime.now().strftime("%Y-%m-%d %H:%M:%S")),
        ("", ""),
        ("Native Balance", balance.native_balance),
        ("Native Value (USD)", f"${balance.native_value_usd:,.2f}"),
        ("Total Value (USD)", f"${balance.total_value_usd:,.2f}"),
        ("Holdings", str(len(balance.tokens))),
        ("Last Updated", balance.last_updated.isoformat()),
    ]
    for i, (label, value) in enumerate(rows, 3):
        ws[f"A{i}"] = label
        ws[f"A{i}"].font = styles["bold"]
        ws[f"B{i}"] = value

    ws2 = wb.create_sheet("Holdings")
    _write_header(ws2, ["Symbol", "Name", "Balance", "Value (USD)", "Token Address"], styles)
    for i, t in enumerate(balance.tokens, 2):
        ws2.cell(row=i, column=1, value=t.symbol)
        ws2.cell(row=i, column=2, value=t.name)
        ws2.cell(row=i, column=3, value=t.balance)
        ws2.cell(row=i, column=4, value=round(t.value_usd, 2))
        ws2.cell(row=i, column=5, value=t.token_address)

    _autofit(ws, ws2)
    return _save(wb)


def transactions_to_excel(records: list[TransferRecord]) -> bytes:
    import openpyxl

    styles = _styles()
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Transactions"
    _write_header(ws, ["Timestamp", "Chain", "Type", "Asset", "Amount", "Value (USD)", "Hash"], styles)
    for i, r in enumerate(records, 2):
        ws.cell(row=i, column=1, value=r.timestamp.isoformat())
        ws.cell(row=i, column=2, value=r.chain)
        ws.cell(row=i, column=3, value=r.type.value)
        ws.cell(row=i, column=4, value=r.from_token or "")
        ws.cell(row=i, column=5, value=r.amount)
        ws.cell(row=i, column=6, value=round(r.value_usd, 2))
        ws.cell(row=i, column=7, value=r.hash)

    _autofit(ws)
    return _save(wb)
