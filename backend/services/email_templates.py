"""
Talendro Email Templates - Branded HTML + plaintext transactional emails.
Includes: Purchase Confirmation (new + upgrade), Session Paused / Reminder,
Login Link, Session Results, Error Resolution, Admin Error Alert.

All HTML is self-contained with inline styles; Outlook gets fixed-width
tables through conditional comments.
"""
import html
import re
import os
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

# Branding constants
BRAND_NAME = "Talendro"
BRAND_COLOR_PRIMARY = "#2F6DF6"
BRAND_COLOR_ACCENT = "#00C4CC"
BRAND_COLOR_DARK = "#0F172A"
TEXT_COLOR = "#2C2F38"
MUTED_COLOR = "#6B7280"
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "greg@talendro.com")
EMAIL_MAX_WIDTH = 640
RESULTS_MAX_WIDTH = 920


def escape(value: Any) -> str:
    return html.escape("" if value is None else str(value), quote=True)


def markdown_to_html(markdown: str) -> str:
    """Render the small markdown subset used in coaching content. Input is escaped first."""
    safe = escape(markdown)
    safe = re.sub(r"^### (.+)$", rf'<h3 style="color:{BRAND_COLOR_PRIMARY};font-size:16px;margin:20px 0 8px 0;">\1</h3>', safe, flags=re.M)
    safe = re.sub(r"^## (.+)$", rf'<h2 style="color:{BRAND_COLOR_PRIMARY};font-size:18px;margin:24px 0 10px 0;">\1</h2>', safe, flags=re.M)
    safe = re.sub(r"^# (.+)$", rf'<h1 style="color:{BRAND_COLOR_PRIMARY};font-size:20px;margin:28px 0 12px 0;">\1</h1>', safe, flags=re.M)
    safe = re.sub(r"^[*-] (.+)$", rf'<li style="margin:6px 0;color:{TEXT_COLOR};">\1</li>', safe, flags=re.M)
    safe = re.sub(r"\*\*(.+?)\*\*", r"<strong>\1</strong>", safe)
    safe = safe.replace("\n\n", f'</p><p style="margin:12px 0;color:{TEXT_COLOR};">')
    return safe.replace("\n", "<br>")


def preformatted_to_html(text: str) -> str:
    return (
        '<div style="background:#0B1220;color:#E5E7EB;border-radius:12px;padding:16px;'
        'white-space:pre-wrap;word-break:break-word;font-family:Menlo,Consolas,monospace;'
        f'font-size:13px;line-height:1.6;">{escape(text)}</div>'
    )


def _wrap(title: str, subtitle: Optional[str], body_html: str, max_width: int = EMAIL_MAX_WIDTH) -> str:
    """Wrap body content in the branded shell (header, card, footer)."""
    subtitle_html = ""
    if subtitle:
        subtitle_html = f'<p style="color:rgba(255,255,255,0.9);margin:12px 0 0 0;font-size:16px;">{escape(subtitle)}</p>'
    year = datetime.now(timezone.utc).year
    return f"""
<!DOCTYPE html>
<html xmlns="http://www.w3.org/1999/xhtml" xmlns:v="urn:schemas-microsoft-com:vml" xmlns:o="urn:schemas-microsoft-com:office:office">
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <meta http-equiv="X-UA-Compatible" content="IE=edge">
  <!--[if mso]>
  <noscript><xml><o:OfficeDocumentSettings><o:PixelsPerInch>96</o:PixelsPerInch></o:OfficeDocumentSettings></xml></noscript>
  <![endif]-->
  <style type="text/css">
    body, table, td, div, p, a {{ -webkit-text-size-adjust: 100%; -ms-text-size-adjust: 100%; }}
    table, td {{ mso-table-lspace: 0pt; mso-table-rspace: 0pt; border-collapse: collapse !important; }}
    @media only screen and (max-width: 599px) {{
      .email-container {{ width: 100% !important; max-width: 100% !important; }}
      .content-padding {{ padding: 24px 16px !important; }}
    }}
  </style>
</head>
<body style="font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,Helvetica,Arial,sans-serif;line-height:1.6;color:{TEXT_COLOR};margin:0;padding:0;background-color:#f0f4f8;">
  <table role="presentation" width="100%" cellpadding="0" cellspacing="0" border="0" style="background-color:#f0f4f8;">
    <tr>
      <td align="center" valign="top" style="padding:24px 12px;">
        <!--[if mso]><table role="presentation" width="{max_width}" cellpadding="0" cellspacing="0" border="0"><tr><td><![endif]-->
        <table role="presentation" class="email-container" width="{max_width}" cellpadding="0" cellspacing="0" border="0" style="width:{max_width}px;max-width:100%;background:#ffffff;border-radius:12px;overflow:hidden;">
          <tr>
            <td style="background-color:{BRAND_COLOR_PRIMARY};padding:36px 40px;text-align:center;">
              <div style="font-size:32px;font-weight:800;color:#ffffff;">{BRAND_NAME}<span style="font-size:14px;vertical-align:super;color:{BRAND_COLOR_ACCENT};">&trade;</span></div>
              <h1 style="color:#ffffff;margin:18px 0 0 0;font-size:26px;font-weight:700;">{escape(title)}</h1>
              {subtitle_html}
            </td>
          </tr>
          <tr>
            <td class="content-padding" style="padding:40px;">
              {body_html}
              <p style="margin:28px 0 0 0;font-size:15px;color:{TEXT_COLOR};">Questions? Reply to this email or write to <a href="mailto:{SUPPORT_EMAIL}" style="color:{BRAND_COLOR_PRIMARY};">{SUPPORT_EMAIL}</a>.</p>
            </td>
          </tr>
          <tr>
            <td style="background-color:{BRAND_COLOR_DARK};padding:32px 40px;text-align:center;">
              <p style="color:{BRAND_COLOR_ACCENT};font-style:italic;font-size:15px;margin:0 0 16px 0;">"Your partner in interview success"</p>
              <p style="color:{MUTED_COLOR};font-size:13px;margin:0;">&copy; {year} {BRAND_NAME}. All rights reserved.</p>
            </td>
          </tr>
        </table>
        <!--[if mso]></td></tr></table><![endif]-->
      </td>
    </tr>
  </table>
</body>
</html>
"""


def _button(url: str, text: str) -> str:
    return f"""
              <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="margin:32px 0;">
                <tr>
                  <td align="center">
                    <!--[if mso]>
                    <v:roundrect xmlns:v="urn:schemas-microsoft-com:vml" href="{escape(url)}" style="height:52px;v-text-anchor:middle;width:280px;" arcsize="18%" fillcolor="{BRAND_COLOR_PRIMARY}" stroke="f">
                    <center style="color:#ffffff;font-family:Arial,sans-serif;font-size:16px;font-weight:bold;">{escape(text)}</center>
                    </v:roundrect>
                    <![endif]-->
                    <!--[if !mso]><!-->
                    <a href="{escape(url)}" style="display:inline-block;background-color:{BRAND_COLOR_PRIMARY};color:#ffffff;padding:16px 40px;text-decoration:none;border-radius:10px;font-weight:700;font-size:16px;">{escape(text)}</a>
                    <!--<![endif]-->
                  </td>
                </tr>
              </table>"""


def _text_footer() -> str:
    return f"""
--
{BRAND_NAME} Interview Coach
Questions? Contact us at {SUPPORT_EMAIL}
"""


def _money(cents: Optional[int]) -> str:
    return f"${(cents or 0) / 100:.2f}"


# ============================================================================
# PURCHASE CONFIRMATION (new purchase + upgrade variants)
# ============================================================================

def build_purchase_confirmation_email(
    session_label: str,
    session_url: str,
    amount_paid_cents: Optional[int] = None,
    upgrade_credit_cents: int = 0,
) -> Dict[str, str]:
    """
    Build the purchase confirmation email. An upgrade credit switches the copy
    to the upgrade variant.

    Returns dict with 'subject', 'html', 'text' keys.
    """
    is_upgrade = upgrade_credit_cents > 0
    if is_upgrade:
        subject = f"Your upgrade to {session_label} is confirmed - {BRAND_NAME}"
        title = "Upgrade Confirmed!"
        intro = (
            f"You've upgraded to the <strong>{escape(session_label)}</strong>. "
            f"We applied a {_money(upgrade_credit_cents)} credit from your earlier purchase."
        )
        intro_text = (
            f"You've upgraded to the {session_label}. "
            f"We applied a {_money(upgrade_credit_cents)} credit from your earlier purchase."
        )
    else:
        subject = f"Your {session_label} is ready - {BRAND_NAME}"
        title = "Payment Confirmed!"
        intro = f"Thank you for purchasing the <strong>{escape(session_label)}</strong>. Your session is ready to start."
        intro_text = f"Thank you for purchasing the {session_label}. Your session is ready to start."

    amount_row = ""
    amount_text = ""
    if amount_paid_cents is not None:
        amount_row = f"""
              <table role="presentation" width="100%" cellpadding="0" cellspacing="0" style="background:#E8F4FE;border-radius:8px;margin:20px 0;">
                <tr>
                  <td style="padding:14px 18px;color:{MUTED_COLOR};">Amount paid</td>
                  <td style="padding:14px 18px;text-align:right;font-weight:700;">{_money(amount_paid_cents)}</td>
                </tr>
              </table>"""
        amount_text = f"\nAmount paid: {_money(amount_paid_cents)}\n"

    body = f"""
              <p style="margin:0 0 16px 0;">{intro}</p>
              {amount_row}
              <p style="margin:0;">You can return to your session at any time using the button below.</p>
              {_button(session_url, "Start My Session")}"""

    text = f"""{title}

{intro_text}
{amount_text}
Start your session: {session_url}
{_text_footer()}"""

    return {"subject": subject, "html": _wrap(title, "Let's get you ready", body), "text": text}


# ============================================================================
# SESSION PAUSED / PAUSE REMINDER
# ============================================================================

def build_pause_email(
    session_label: str,
    resume_url: str,
    expires_at: datetime,
    hours_remaining: int,
    questions_completed: int,
    total_questions: int,
    first_name: Optional[str] = None,
    is_reminder: bool = False,
) -> Dict[str, str]:
    """Build the paused-session email (or its reminder variant)."""
    name = first_name or "there"
    expires_str = expires_at.strftime("%B %d, %Y at %I:%M %p UTC")
    if is_reminder:
        subject = f"Reminder: your {session_label} expires in {hours_remaining} hours"
        title = "Your Interview Is Waiting"
    else:
        subject = f"Your {session_label} is paused - resume within 24 hours"
        title = "Session Paused"

    body = f"""
              <p style="margin:0 0 16px 0;">Hi {escape(name)},</p>
              <p style="margin:0 0 16px 0;">Your <strong>{escape(session_label)}</strong> is paused. You've completed
              <strong>{questions_completed} of {total_questions}</strong> questions.</p>
              <p style="margin:0 0 16px 0;">Your progress is saved until <strong>{escape(expires_str)}</strong>
              ({hours_remaining} hours remaining). You can pick up on any device.</p>
              {_button(resume_url, "Resume My Interview")}
              <p style="color:{MUTED_COLOR};font-size:14px;">Paused sessions can only be resumed for 24 hours.</p>"""

    text = f"""{title}

Hi {name},

Your {session_label} is paused. You've completed {questions_completed} of {total_questions} questions.
Your progress is saved until {expires_str} ({hours_remaining} hours remaining).

Resume here: {resume_url}
{_text_footer()}"""

    return {"subject": subject, "html": _wrap(title, None, body), "text": text}


# ============================================================================
# LOGIN LINK
# ============================================================================

def build_login_link_email(login_url: str, expires_minutes: int) -> Dict[str, str]:
    subject = f"Your {BRAND_NAME} sign-in link"
    title = "Sign In to Talendro"
    body = f"""
              <p style="margin:0 0 16px 0;">Click the button below to sign in to your dashboard. No password needed.</p>
              {_button(login_url, "Sign In")}
              <p style="color:{MUTED_COLOR};font-size:14px;">This link expires in {expires_minutes} minutes and can be used once.
              If you didn't request it, you can ignore this email.</p>"""
    text = f"""{title}

Sign in to your dashboard: {login_url}

This link expires in {expires_minutes} minutes and can be used once.
{_text_footer()}"""
    return {"subject": subject, "html": _wrap(title, None, body), "text": text}


# ============================================================================
# SESSION RESULTS
# ============================================================================

def build_results_email(
    session_label: str,
    email: str,
    message_count: int,
    report: Dict[str, Optional[str]],
) -> Dict[str, str]:
    """
    Build the results email from the same report blocks shown on screen.
    report keys: prepPacket, transcript, analysisMarkdown (any may be None).
    """
    subject = f"Your {session_label} Results - {BRAND_NAME}"
    title = f"Your {session_label} Results"
    sections: List[str] = []
    text_sections: List[str] = []

    if report.get("analysisMarkdown"):
        sections.append(_section("Results & Recommendations", markdown_to_html(report["analysisMarkdown"])))
        text_sections.append("RESULTS & RECOMMENDATIONS\n\n" + report["analysisMarkdown"])
    if report.get("transcript"):
        sections.append(_section("Interview Transcript", preformatted_to_html(report["transcript"])))
        text_sections.append("INTERVIEW TRANSCRIPT\n\n" + report["transcript"])
    if report.get("prepPacket"):
        sections.append(_section("Prep Packet", markdown_to_html(report["prepPacket"])))
        text_sections.append("PREP PACKET\n\n" + report["prepPacket"])

    meta = f"""
              <p style="margin:0;color:{MUTED_COLOR};font-size:14px;">Sent to: <strong style="color:{TEXT_COLOR};">{escape(email)}</strong></p>
              <p style="margin:6px 0 24px 0;color:{MUTED_COLOR};font-size:14px;">Session messages captured: <strong style="color:{TEXT_COLOR};">{message_count}</strong></p>"""
    body = meta + "".join(sections) + _button("https://coach.talendro.com/#products", "Practice Again")

    text = f"""{title}

""" + "\n\n".join(text_sections) + "\n" + _text_footer()

    return {
        "subject": subject,
        "html": _wrap(title, "Session complete - full deliverable below", body, max_width=RESULTS_MAX_WIDTH),
        "text": text,
    }


def _section(heading: str, inner_html: str) -> str:
    return f"""
              <h2 style="color:{BRAND_COLOR_PRIMARY};font-size:20px;margin:0 0 12px 0;">{escape(heading)}</h2>
              <div style="margin:14px 0 28px 0;">{inner_html}</div>"""


# ============================================================================
# ERROR RESOLUTION (user) + ADMIN ALERT
# ============================================================================

def build_error_resolution_email(resolution: str, error_code: Optional[str] = None) -> Dict[str, str]:
    subject = f"We're on it - help with your {BRAND_NAME} session"
    title = "Here's How to Fix It"
    body = f"""
              <p style="margin:0 0 16px 0;">We noticed a problem with your session and wanted to help right away.</p>
              <div style="background:#E8F4FE;border-radius:8px;padding:18px;">{markdown_to_html(resolution)}</div>
              <p style="margin:16px 0 0 0;color:{MUTED_COLOR};font-size:14px;">Our team has also been notified and will follow up if needed.</p>"""
    text = f"""{title}

We noticed a problem with your session and wanted to help right away.

{resolution}

Our team has also been notified and will follow up if needed.
{_text_footer()}"""
    return {"subject": subject, "html": _wrap(title, error_code, body), "text": text}


def build_admin_error_alert_email(error_log: Dict[str, Any], resolution: Optional[str]) -> Dict[str, str]:
    code = error_log.get("error_code") or "unknown"
    subject = f"[{BRAND_NAME} Error] {error_log.get('error_type')}/{code}"
    title = "Error Report"
    rows = [
        ("Error type", error_log.get("error_type")),
        ("Error code", code),
        ("Message", error_log.get("error_message")),
        ("User email", error_log.get("user_email") or "-"),
        ("Session", error_log.get("session_id") or "-"),
        ("Logged at", error_log.get("created_at")),
        ("AI resolution", "yes" if error_log.get("ai_resolution_successful") else "no"),
    ]
    rows_html = "".join(
        f'<tr><td style="padding:8px 0;color:{MUTED_COLOR};width:140px;">{escape(k)}</td>'
        f'<td style="padding:8px 0;">{escape(v)}</td></tr>'
        for k, v in rows
    )
    context = error_log.get("context") or {}
    if resolution:
        resolution_html = markdown_to_html(resolution)
    else:
        resolution_html = '<p style="color:#dc2626;">No resolution could be generated - manual follow-up required.</p>'
    body = f"""
              <table role="presentation" width="100%" cellpadding="0" cellspacing="0">{rows_html}</table>
              <h3 style="color:{BRAND_COLOR_PRIMARY};margin:24px 0 8px 0;">Resolution sent to user</h3>
              {resolution_html}
              <h3 style="color:{BRAND_COLOR_PRIMARY};margin:24px 0 8px 0;">Context</h3>
              {preformatted_to_html(repr(context))}"""
    text = "\n".join(f"{k}: {v}" for k, v in rows) + f"\n\nResolution:\n{resolution or 'NONE - manual follow-up required'}\n\nContext: {context!r}\n"
    return {"subject": subject, "html": _wrap(title, None, body), "text": text}
