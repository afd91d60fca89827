# filename: personalization.py

import hashlib
from typing import Dict, Optional
from urllib.parse import urlencode

from bs4 import BeautifulSoup

NAME_PLACEHOLDER = '{name}'

UNSUBSCRIBE_FOOTER = """
<div style="margin-top: 20px; padding-top: 20px; border-top: 1px solid #eee; font-size: 12px; color: #666;">
  Wenn Sie keine weiteren E-Mails erhalten möchten,
  <a href="{url}" style="color: #666;">klicken Sie hier zum Abbestellen</a>.
</div>
"""

TRACKING_PIXEL = '<img src="{url}" width="1" height="1" alt="" style="display:none;" />'


def unsubscribe_url(base_url: str, token: str) -> str:
    return f"{base_url}/unsubscribe?{urlencode({'token': token})}"


def open_tracking_url(base_url: str, recipient_id: str, campaign_id: str) -> str:
    return f"{base_url}/api/tracking/open?{urlencode({'rid': recipient_id, 'cid': campaign_id})}"


def link_id_for(url: str) -> str:
    """Stable short id so clicks on the same link aggregate across recipients"""
    return hashlib.sha1(url.encode('utf-8')).hexdigest()[:12]


def click_tracking_url(base_url: str, recipient_id: str, campaign_id: str, url: str) -> str:
    params = {'lid': link_id_for(url), 'rid': recipient_id, 'cid': campaign_id, 'url': url}
    return f"{base_url}/api/tracking/link?{urlencode(params)}"


def replace_name(content: str, name: Optional[str], fallback: str) -> str:
    return content.replace(NAME_PLACEHOLDER, name or fallback)


def convert_to_tracking_links(html: str, base_url: str, recipient_id: str, campaign_id: str) -> str:
    """Point every absolute http(s) link at the click-tracking redirect"""
    soup = BeautifulSoup(html, 'html.parser')
    anchors = soup.find_all('a', href=True)
    changed = False
    for anchor in anchors:
        href = anchor['href'].strip()
        if href.lower().startswith(('http://', 'https://')):
            anchor['href'] = click_tracking_url(base_url, recipient_id, campaign_id, href)
            changed = True
    return str(soup) if changed else html


def _insert_before_body_end(html: str, snippet: str) -> str:
    marker = html.lower().rfind('</body>')
    if marker == -1:
        return html + snippet
    return html[:marker] + snippet + html[marker:]


def add_tracking_pixel(html: str, tracking_url: str) -> str:
    return _insert_before_body_end(html, TRACKING_PIXEL.format(url=tracking_url))


def add_unsubscribe_footer(html: str, url: str) -> str:
    return _insert_before_body_end(html, UNSUBSCRIBE_FOOTER.format(url=url))


def build_message(content: str, *, base_url: str, recipient_id: str, campaign_id: str,
                  unsubscribe_token: str, recipient_name: Optional[str] = None,
                  name_fallback: str = 'Kunde', track_clicks: bool = True) -> Dict[str, object]:
    """
    Produce the personalized HTML body and the list headers for one recipient.
    Links are rewritten before the footer is appended, so the unsubscribe link
    itself is never routed through click tracking.
    """
    html = replace_name(content, recipient_name, name_fallback)
    if track_clicks:
        html = convert_to_tracking_links(html, base_url, recipient_id, campaign_id)

    unsubscribe = unsubscribe_url(base_url, unsubscribe_token)
    html = add_unsubscribe_footer(html, unsubscribe)
    html = add_tracking_pixel(html, open_tracking_url(base_url, recipient_id, campaign_id))

    headers = {
        'List-Unsubscribe': f"<{unsubscribe}>",
        'List-Unsubscribe-Post': 'List-Unsubscribe=One-Click',
    }
    return {'html': html, 'headers': headers, 'unsubscribe_url': unsubscribe}
