"""
Message formatting and escaping utilities for Telegram messages

Provides consistent HTML formatting and escaping for admin and customer messages
to prevent parsing errors.
"""

import html
from typing import Any, Dict, Iterable


def escape_html(text: str) -> str:
    """
    Escape HTML special characters for safe display in Telegram HTML mode.

    Args:
        text: Raw text to escape

    Returns:
        HTML-escaped text safe for Telegram
    """
    if not text:
        return ""
    return html.escape(str(text))


def format_inline_code(text: str) -> str:
    if not text:
        return "<code></code>"
    return f"<code>{escape_html(text)}</code>"


def format_bold(text: str) -> str:
    if not text:
        return ""
    return f"<b>{escape_html(text)}</b>"


def truncate_with_ellipsis(text: str, max_length: int = 50) -> str:
    """
    Truncate text with ellipsis if it exceeds max_length.
    """
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return f"{text[:max_length - 3]}..."


STATUS_ICONS = {
    'pending': '⏳',
    'processing': '🔄',
    'completed': '✅',
    'failed': '❌',
}


def format_pending_domain_line(record: Dict[str, Any]) -> str:
    """One admin list line for a pending-domain record (camelCase dict)"""
    icon = STATUS_ICONS.get(record.get('status'), '❔')
    review = " 🚩" if record.get('needsManualReview') else ""
    return (
        f"{icon} {format_inline_code(str(record.get('id')))} {format_bold(record.get('domainName', ''))} "
        f"· {escape_html(record.get('orderId', ''))} · {record.get('verificationAttempts', 0)} tries{review}\n"
        f"   {escape_html(truncate_with_ellipsis(record.get('reason') or '', 80))}"
    )


def format_pending_domain_list(records: Iterable[Dict[str, Any]], summary: Dict[str, int], title: str) -> str:
    lines = [f"📋 {format_bold(title)}"]
    lines.append(" | ".join(f"{STATUS_ICONS.get(status, '')} {status}: {count}"
                            for status, count in summary.items()))
    lines.append("")
    rendered = [format_pending_domain_line(record) for record in records]
    lines.extend(rendered or ["No records."])
    return "\n".join(lines)


def format_batch_report(report: Dict[str, Any]) -> str:
    """Admin summary of one batch verification run"""
    return "\n".join([
        f"🔁 {format_bold('Verification run finished')}",
        f"Checked: {report.get('checked', 0)}",
        f"✅ Completed: {report.get('completed', 0)}",
        f"❌ Failed: {report.get('failed', 0)}",
        f"❔ Inconclusive: {report.get('inconclusive', 0)}",
        f"🚩 Flagged for review: {report.get('flagged', 0)}",
        f"⏭️ Skipped: {report.get('skipped', 0)}",
        f"📡 Transport errors: {report.get('transport_errors', 0)}",
        f"💥 Errors: {report.get('errors', 0)}",
    ])


def format_failed_domains(listing: Dict[str, Any], title: str) -> str:
    """Admin view of orders with failed registrations"""
    summary = listing.get('summary', {})
    lines = [
        f"❌ {format_bold(title)}",
        f"Orders: {summary.get('totalFailedOrders', 0)} | "
        f"failed: {summary.get('totalFailedDomains', 0)} | "
        f"registered: {summary.get('totalSuccessfulDomains', 0)}",
        "",
    ]
    for item in listing.get('items', []):
        lines.append(f"📦 {format_inline_code(item.get('orderId', ''))}")
        for failed in item.get('failedDomains', []):
            lines.append(f"   ❌ {format_bold(failed.get('domainName', ''))} "
                         f"{escape_html(truncate_with_ellipsis(failed.get('error') or '', 80))}")
        for domain_name in item.get('successfulDomains', []):
            lines.append(f"   ✅ {escape_html(domain_name)}")
    if not listing.get('items'):
        lines.append("No failed registrations.")
    return "\n".join(lines)
