import unittest
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup

from campaign_delivery.utils.personalization import (
    build_message,
    convert_to_tracking_links,
    link_id_for,
)

BASE = 'https://contact-tables.com'


def _build(content, **kwargs):
    kwargs.setdefault('recipient_name', None)
    return build_message(content, base_url=BASE, recipient_id='r-1', campaign_id='c-1',
                         unsubscribe_token='tok123', **kwargs)


class PersonalizationTests(unittest.TestCase):
    def test_name_and_fallback(self):
        self.assertIn('Hallo Anna,', _build('<p>Hallo {name},</p>', recipient_name='Anna')['html'])
        self.assertIn('Hallo Kunde,', _build('<p>Hallo {name},</p>')['html'])
        self.assertIn('Hallo Gast,', _build('<p>Hallo {name},</p>', name_fallback='Gast')['html'])

    def test_links_point_at_click_tracking(self):
        html = _build('<html><body><a href="https://example.com/a?x=1">A</a></body></html>')['html']
        anchors = BeautifulSoup(html, 'html.parser').find_all('a')

        tracked = urlparse(anchors[0]['href'])
        params = parse_qs(tracked.query)
        self.assertEqual(tracked.path, '/api/tracking/link')
        self.assertEqual(params['url'], ['https://example.com/a?x=1'])
        self.assertEqual(params['rid'], ['r-1'])
        self.assertEqual(params['cid'], ['c-1'])
        self.assertEqual(params['lid'], [link_id_for('https://example.com/a?x=1')])

    def test_unsubscribe_link_is_not_tracked(self):
        result = _build('<html><body><p>Text</p></body></html>')
        anchors = BeautifulSoup(result['html'], 'html.parser').find_all('a')
        self.assertEqual([a['href'] for a in anchors], [f"{BASE}/unsubscribe?token=tok123"])
        self.assertEqual(result['unsubscribe_url'], f"{BASE}/unsubscribe?token=tok123")
        self.assertEqual(result['headers'], {
            'List-Unsubscribe': f"<{BASE}/unsubscribe?token=tok123>",
            'List-Unsubscribe-Post': 'List-Unsubscribe=One-Click',
        })

    def test_pixel_and_footer_go_before_body_end(self):
        html = _build('<html><body><p>Text</p></body></html>')['html']
        body_end = html.lower().rfind('</body>')
        self.assertLess(html.find('/api/tracking/open?rid=r-1&cid=c-1'), body_end)
        self.assertGreater(html.find('zum Abbestellen'), 0)
        self.assertLess(html.find('zum Abbestellen'), body_end)

    def test_fragment_without_body_gets_appended(self):
        html = _build('<p>Nur ein Absatz</p>')['html']
        self.assertTrue(html.startswith('<p>Nur ein Absatz</p>'))
        self.assertIn('/api/tracking/open?', html)

    def test_non_http_links_are_left_alone(self):
        content = '<a href="mailto:info@example.com">Mail</a><a href="#top">Top</a>'
        self.assertEqual(convert_to_tracking_links(content, BASE, 'r-1', 'c-1'), content)

    def test_click_tracking_can_be_disabled(self):
        html = _build('<a href="https://example.com">x</a>', track_clicks=False)['html']
        self.assertIn('<a href="https://example.com">x</a>', html)


if __name__ == "__main__":
    unittest.main()
