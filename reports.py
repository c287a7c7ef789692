# reports.py
"""Annotated CDE report PDFs built with PyMuPDF."""
import base64
import logging
from datetime import datetime

import fitz

logger = logging.getLogger(__name__)

PAGE_WIDTH = 612
PAGE_HEIGHT = 792
MARGIN = 40


def _rgb(r, g, b):
    return (r / 255, g / 255, b / 255)


STATUS_CONFIG = {
    'comply': {'color': _rgb(11, 134, 75), 'bg': _rgb(178, 255, 218), 'label': 'C'},
    'deviate': {'color': _rgb(204, 147, 0), 'bg': _rgb(255, 236, 170), 'label': 'D'},
    'exception': {'color': _rgb(236, 67, 67), 'bg': _rgb(255, 218, 218), 'label': 'E'},
    'pending': {'color': _rgb(108, 108, 113), 'bg': _rgb(237, 237, 237), 'label': 'P'},
}

LEGEND = [
    ('comply', "Comply - Submittal meets specification requirements"),
    ('deviate', "Deviate - Submittal differs from specification but may be acceptable"),
    ('exception', "Exception - Submittal does not meet specification requirements"),
    ('pending', "Pending - Not yet reviewed"),
]

DARK = _rgb(42, 42, 47)
MUTED = _rgb(108, 108, 113)
MAX_LEGEND_ITEMS = 15


def status_config(status):
    return STATUS_CONFIG.get(status) or STATUS_CONFIG['pending']


def truncate(text, max_chars):
    text = text or ''
    if len(text) <= max_chars:
        return text
    return text[:max_chars - 3] + '...'


def report_counts(rows):
    """Title-page tallies; any status without its own box counts as pending, as it is drawn."""
    counts = {'total': len(rows), 'comply': 0, 'deviate': 0, 'exception': 0, 'pending': 0, 'reviewed': 0}
    for row in rows:
        status = row.get('cdeStatus')
        if status in ('comply', 'deviate', 'exception'):
            counts[status] += 1
        else:
            counts['pending'] += 1
        if row.get('isReviewed'):
            counts['reviewed'] += 1
    return counts


def _centered(page, y, text, fontsize, color=DARK, bold=False):
    rect = fitz.Rect(MARGIN, y - fontsize, PAGE_WIDTH - MARGIN, y + fontsize)
    page.insert_textbox(rect, text, fontsize=fontsize, fontname='hebo' if bold else 'helv',
                        color=color, align=fitz.TEXT_ALIGN_CENTER)


def _badge(page, x, y, size, text, config, fontsize=8):
    rect = fitz.Rect(x, y, x + size, y + size)
    page.draw_rect(rect, color=config['bg'], fill=config['bg'])
    page.insert_textbox(rect, text, fontsize=fontsize, fontname='hebo', color=config['color'],
                        align=fitz.TEXT_ALIGN_CENTER)


def add_title_page(doc, project_name, rows):
    page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
    _centered(page, MARGIN + 60, "CDE Report", 32, bold=True)
    _centered(page, MARGIN + 95, project_name, 18, color=MUTED)
    _centered(page, MARGIN + 120, f"Generated: {datetime.now().strftime('%B %d, %Y')}", 11, color=MUTED)

    counts = report_counts(rows)
    box_width, box_height, gap = 100, 70, 20
    start_x = (PAGE_WIDTH - (box_width * 4 + gap * 3)) / 2
    summary_y = MARGIN + 180
    for i, status in enumerate(('comply', 'deviate', 'exception', 'pending')):
        config = STATUS_CONFIG[status]
        x = start_x + i * (box_width + gap)
        page.draw_rect(fitz.Rect(x, summary_y, x + box_width, summary_y + box_height),
                       color=config['bg'], fill=config['bg'])
        page.insert_textbox(fitz.Rect(x, summary_y + 10, x + box_width, summary_y + 45), str(counts[status]),
                            fontsize=28, fontname='hebo', color=config['color'], align=fitz.TEXT_ALIGN_CENTER)
        page.insert_textbox(fitz.Rect(x, summary_y + 45, x + box_width, summary_y + box_height),
                            status.capitalize(), fontsize=11, fontname='helv', color=config['color'],
                            align=fitz.TEXT_ALIGN_CENTER)

    _centered(page, summary_y + box_height + 40, f"Total Items: {counts['total']}", 14)
    _centered(page, summary_y + box_height + 60, f"Reviewed: {counts['reviewed']} / {counts['total']}", 14)

    legend_y = summary_y + box_height + 120
    page.insert_text((MARGIN, legend_y), "Legend", fontsize=14, fontname='hebo', color=DARK)
    for i, (status, label) in enumerate(LEGEND):
        y = legend_y + 25 + i * 25
        _badge(page, MARGIN, y - 12, 18, STATUS_CONFIG[status]['label'], STATUS_CONFIG[status], fontsize=10)
        page.insert_text((MARGIN + 30, y), label, fontsize=11, fontname='helv', color=_rgb(83, 82, 87))
    return page


def add_section_header(doc, title):
    page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
    _centered(page, 100, title, 24, bold=True)
    page.draw_line(fitz.Point(MARGIN, 120), fitz.Point(PAGE_WIDTH - MARGIN, 120), color=MUTED, width=1)
    return page


def _image_rect(page_data, max_width, max_height):
    width = page_data.get('width') or 0
    height = page_data.get('height') or 0
    aspect = width / height if width and height else 8.5 / 11
    display_width = max_width
    display_height = display_width / aspect
    if display_height > max_height:
        display_height = max_height
        display_width = display_height * aspect
    return fitz.Rect(MARGIN, MARGIN, MARGIN + display_width, MARGIN + display_height)


def add_annotated_page(doc, page_data, rows, kind):
    """One page image with numbered, status-coloured boxes and an item legend beside it."""
    page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
    content_width = PAGE_WIDTH - MARGIN * 2
    legend_x = MARGIN + content_width * 0.62
    label = 'Specification' if kind == 'spec' else 'Submittal'
    page.insert_text((MARGIN, MARGIN - 10), f"{label} - Page {page_data['pageNumber']}",
                     fontsize=10, fontname='hebo', color=MUTED)

    image_rect = _image_rect(page_data, content_width * 0.58, PAGE_HEIGHT - MARGIN * 2 - 20)
    try:
        page.insert_image(image_rect, stream=base64.b64decode(page_data['base64']))
    except (ValueError, RuntimeError) as e:
        logger.warning("Could not embed page %s image: %s", page_data.get('pageNumber'), e)
        page.draw_rect(image_rect, color=_rgb(245, 245, 245), fill=_rgb(245, 245, 245))
        page.insert_textbox(image_rect, "Image could not be loaded", fontsize=12, color=_rgb(150, 150, 150),
                            align=fitz.TEXT_ALIGN_CENTER)

    for index, row in enumerate(rows):
        location = row.get('location') if kind == 'spec' else row.get('submittalLocation')
        bbox = (location or {}).get('boundingBox')
        if not bbox:
            continue
        config = status_config(row.get('cdeStatus'))
        x0 = image_rect.x0 + bbox['x'] * image_rect.width
        y0 = image_rect.y0 + bbox['y'] * image_rect.height
        page.draw_rect(fitz.Rect(x0, y0, x0 + bbox['width'] * image_rect.width,
                                 y0 + bbox['height'] * image_rect.height),
                       color=config['color'], width=1.5)
        badge_size = 14
        _badge(page, x0 - badge_size - 4, y0, badge_size, str(index + 1), config)
        _badge(page, x0 - badge_size * 2 - 6, y0, badge_size, config['label'], config)

    page.insert_text((legend_x, MARGIN), "Items on this page:", fontsize=11, fontname='hebo', color=DARK)
    y = MARGIN + 20
    for index, row in enumerate(rows):
        if index >= MAX_LEGEND_ITEMS or y > PAGE_HEIGHT - MARGIN - 40:
            page.insert_text((legend_x, y), f"... and {len(rows) - index} more items",
                             fontsize=8, fontname='helv', color=MUTED)
            break
        config = status_config(row.get('cdeStatus'))
        _badge(page, legend_x, y - 9, 12, str(index + 1), config, fontsize=7)
        _badge(page, legend_x + 14, y - 9, 12, config['label'], config, fontsize=7)
        page.insert_text((legend_x + 30, y), truncate(row.get('field'), 30), fontsize=8, fontname='hebo', color=DARK)
        y += 11
        page.insert_text((legend_x + 8, y), truncate(row.get('value'), 45), fontsize=7, fontname='helv', color=MUTED)
        y += 10
        if row.get('specNumber'):
            page.insert_text((legend_x + 8, y), truncate(f"Spec {row['specNumber']}", 45),
                             fontsize=7, fontname='helv', color=MUTED)
            y += 10
        if row.get('cdeComment'):
            page.insert_text((legend_x + 8, y), truncate(row['cdeComment'], 45),
                             fontsize=7, fontname='helv', color=config['color'])
            y += 10
        y += 6
    return page


def _group_by_page(rows, key):
    grouped = {}
    for row in rows:
        page_number = key(row)
        if page_number:
            grouped.setdefault(page_number, []).append(row)
    return grouped


def generate_cde_pdf(spec_pages, submittal_pages, rows, project_name='CDE Report', include_unreviewed=True):
    """Builds the report and returns the PDF bytes."""
    if not include_unreviewed:
        rows = [r for r in rows if r.get('isReviewed') or r.get('cdeStatus')]

    doc = fitz.open()
    try:
        add_title_page(doc, project_name, rows)

        if spec_pages and rows:
            by_spec_page = _group_by_page(rows, lambda r: r.get('pageNumber'))
            add_section_header(doc, "PART 1: SPECIFICATION PAGES")
            for page_data in spec_pages:
                page_rows = by_spec_page.get(page_data['pageNumber'])
                if page_rows:
                    add_annotated_page(doc, page_data, page_rows, 'spec')

        if submittal_pages:
            by_submittal_page = _group_by_page(rows, lambda r: (r.get('submittalLocation') or {}).get('pageNumber'))
            if by_submittal_page:
                add_section_header(doc, "PART 2: SUBMITTAL PAGES")
                for page_data in submittal_pages:
                    page_rows = by_submittal_page.get(page_data['pageNumber'])
                    if page_rows:
                        add_annotated_page(doc, page_data, page_rows, 'submittal')

        logger.info("Generated CDE report '%s': %d pages, %d items", project_name, doc.page_count, len(rows))
        return doc.tobytes()
    finally:
        doc.close()
