"""
Accountability opt-out page

Public, unauthenticated. The audience is a contact clicking a link in an
email, so every outcome (including bad or missing tokens) renders a
friendly HTML page with status 200.
"""

import html
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import HTMLResponse
from sqlalchemy.orm import Session

from rundown.core.config import settings
from rundown.core.database import get_db
from rundown.services.contacts import (
    OPT_OUT_ALREADY,
    OPT_OUT_DONE,
    OPT_OUT_MISSING,
    opt_out_contact,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/accountability", tags=["Accountability"])


OPT_OUT_PAGES = {
    OPT_OUT_MISSING: (
        "Missing link",
        "This opt-out link is invalid. Please contact support if you need help.",
        False,
    ),
    "not_found": (
        "Link expired",
        "We could not find this contact. The link may have already been used.",
        False,
    ),
    OPT_OUT_ALREADY: (
        "Already opted out",
        "You have already removed yourself from these updates. No further action is needed.",
        True,
    ),
    OPT_OUT_DONE: (
        "You're all set",
        "We will no longer send you accountability updates. Thanks for supporting your buddy.",
        True,
    ),
}


def render_opt_out_page(heading: str, body: str, success: bool) -> str:
    accent = "#16a34a" if success else "#dc2626"
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{html.escape(heading)} | Rundown</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Arial, sans-serif; background-color: #f9fafb; margin: 0;">
  <main style="max-width: 480px; margin: 80px auto; background: #ffffff; border-radius: 12px; padding: 32px; border-top: 4px solid {accent};">
    <h1 style="margin: 0 0 16px; font-size: 22px; color: #111827;">{html.escape(heading)}</h1>
    <p style="color: #374151; line-height: 1.5;">{html.escape(body)}</p>
    <p style="color: #9ca3af; font-size: 13px;">Questions? {html.escape(settings.SUPPORT_EMAIL)}</p>
  </main>
</body>
</html>"""


@router.get("/opt-out", response_class=HTMLResponse)
def opt_out(
    token: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    """Stop accountability messages to the contact behind `token`."""
    try:
        result = opt_out_contact(db, token)
        status_key = result.status
    except Exception as e:
        db.rollback()
        logger.error(f"Opt-out failed: {e}", exc_info=True)
        status_key = "not_found"

    heading, body, success = OPT_OUT_PAGES[status_key]
    return HTMLResponse(render_opt_out_page(heading, body, success), status_code=200)
