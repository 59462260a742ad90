# orderbridge/pages.py
"""
The three HTML pages of the verification link: proof review, delivery
confirmation and the action result. Kept as plain strings; the rest of the
web front-end lives elsewhere.
"""
from html import escape
from typing import Any

from orderbridge.models import ActionResult
from orderbridge.verification import VerificationPage

_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
</head>
<body>
<main>
{body}
</main>
</body>
</html>
"""

_DETAIL_LABELS = [
    ("userTag", "Customer"),
    ("productName", "Product"),
    ("productPrice", "Price"),
]


def _layout(title: str, body: str) -> str:
    return _LAYOUT.format(title=escape(title), body=body)


def _details_list(details: dict[str, Any]) -> str:
    rows = []
    for key, label in _DETAIL_LABELS:
        if details.get(key) not in (None, ""):
            rows.append(f"<li><strong>{escape(label)}:</strong> {escape(str(details[key]))}</li>")
    out = "<ul>" + "".join(rows) + "</ul>" if rows else ""
    image_url = details.get("imageUrl")
    if image_url:
        out += f'<p><a href="{escape(str(image_url))}"><img src="{escape(str(image_url))}" alt="proof of payment" style="max-width:480px"></a></p>'
    return out


def render_verify_receipt(page: VerificationPage) -> str:
    title = str(page.details.get("title") or "Proof of payment review")
    action = f"/verify/action/{escape(page.token_id)}"
    body = (
        f"<h1>{escape(title)}</h1>"
        f"{_details_list(page.details)}"
        f'<form method="post" action="{action}">'
        '<button type="submit" name="action" value="approve">Approve</button> '
        '<button type="submit" name="action" value="reject">Reject</button>'
        "</form>"
    )
    return _layout(title, body)


def render_mark_delivery(page: VerificationPage) -> str:
    product = page.details.get("productName") or "unknown"
    action = f"/verify/action/{escape(page.token_id)}"
    body = (
        "<h1>Mark order as delivered</h1>"
        f"<p><strong>Product:</strong> {escape(str(product))}</p>"
        f'<form method="post" action="{action}">'
        '<button type="submit" name="action" value="deliver">Confirm delivery</button>'
        "</form>"
    )
    return _layout("Mark order as delivered", body)


def render_action_result(result: ActionResult) -> str:
    heading = "Done" if result.success else "Not applied"
    body = (
        f'<h1 class="{"success" if result.success else "failure"}">{heading}</h1>'
        f"<p>{escape(result.message)}</p>"
    )
    return _layout(heading, body)
