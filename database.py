# database.py
"""One function per CRUD operation, plus converters from table rows to the
camelCase dicts the API and workspace exchange."""
from datetime import datetime

from models import db, Project, Document, Extraction, ExtractedRow, CDEReport, Comparison
from comparison import summarize

# --- Projects ---

def create_project(name, user_id=None):
    project = Project(name=name, user_id=user_id)
    db.session.add(project)
    db.session.commit()
    return project


def get_projects(user_id=None):
    query = Project.query
    if user_id:
        query = query.filter_by(user_id=user_id)
    else:
        # anonymous callers only see anonymous projects
        query = query.filter(Project.user_id.is_(None))
    return query.order_by(Project.created_at.desc()).all()


def get_project(project_id):
    return db.session.get(Project, project_id)


def update_project(project_id, name):
    project = get_project(project_id)
    if project is None:
        return None
    project.name = name
    project.updated_at = datetime.utcnow()
    db.session.commit()
    return project


def delete_project(project_id):
    project = get_project(project_id)
    if project is None:
        return False
    db.session.delete(project)
    db.session.commit()
    return True


# --- Documents ---

def create_document(project_id, name, type, blob_url, page_count=None, manufacturer=None, model=None):
    document = Document(project_id=project_id, name=name, type=type, blob_url=blob_url,
                        page_count=page_count, manufacturer=manufacturer, model=model)
    db.session.add(document)
    db.session.commit()
    return document


def get_documents(project_id=None):
    query = Document.query
    if project_id:
        query = query.filter_by(project_id=project_id)
    return query.order_by(Document.uploaded_at.desc()).all()


def get_document(document_id):
    return db.session.get(Document, document_id)


def delete_document(document_id):
    document = get_document(document_id)
    if document is None:
        return False
    db.session.delete(document)
    db.session.commit()
    return True


# --- Extractions ---

def save_extraction(document_id, extraction_result):
    """Stores an extraction and its rows; returns (extraction, rows)."""
    metadata = extraction_result['metadata']
    extraction = Extraction(
        document_id=document_id,
        document_type=metadata.get('documentType'),
        total_rows=metadata.get('totalRows'),
        processing_time=metadata.get('processingTime'),
        extraction_metadata=metadata,
    )
    db.session.add(extraction)
    db.session.flush()

    rows = []
    for position, row in enumerate(extraction_result['rows']):
        db_row = ExtractedRow(
            extraction_id=extraction.id,
            position=position,
            field=row.get('field'),
            value=row.get('value'),
            unit=row.get('unit') or None,
            section=row.get('section') or None,
            spec_number=row.get('specNumber') or None,
            confidence=row.get('confidence'),
            page_number=row.get('pageNumber'),
            location=row.get('location') or None,
            raw_text=row.get('rawText') or None,
            cde_status=row.get('cdeStatus') or None,
            cde_comment=row.get('cdeComment') or None,
            cde_source=row.get('cdeSource') or None,
            is_reviewed=bool(row.get('isReviewed')),
            submittal_value=row.get('submittalValue') or None,
            submittal_unit=row.get('submittalUnit') or None,
            submittal_location=row.get('submittalLocation') or None,
            match_confidence=row.get('matchConfidence') or None,
        )
        db.session.add(db_row)
        rows.append(db_row)

    db.session.commit()
    return extraction, rows


def get_extraction_by_document(document_id):
    """Latest extraction for a document as (extraction, rows), or None."""
    extraction = (Extraction.query.filter_by(document_id=document_id)
                  .order_by(Extraction.extracted_at.desc()).first())
    if extraction is None:
        return None
    rows = (ExtractedRow.query.filter_by(extraction_id=extraction.id)
            .order_by(ExtractedRow.page_number, ExtractedRow.position).all())
    return extraction, rows


def update_extracted_row(row_id, data):
    """Applies review changes to one stored row. Returns None if absent."""
    row = db.session.get(ExtractedRow, row_id)
    if row is None:
        return None
    columns = {
        'cdeStatus': 'cde_status',
        'cdeComment': 'cde_comment',
        'cdeSource': 'cde_source',
        'isReviewed': 'is_reviewed',
        'submittalValue': 'submittal_value',
        'submittalUnit': 'submittal_unit',
        'submittalLocation': 'submittal_location',
        'matchConfidence': 'match_confidence',
    }
    for key, column in columns.items():
        if key in data:
            setattr(row, column, data[key])
    row.updated_at = datetime.utcnow()
    db.session.commit()
    return row


def db_rows_to_extracted_rows(db_rows):
    return [{
        'id': row.id,
        'field': row.field or '',
        'value': row.value or '',
        'unit': row.unit or None,
        'section': row.section or None,
        'specNumber': row.spec_number or None,
        'confidence': row.confidence or 'medium',
        'pageNumber': row.page_number or 1,
        'location': row.location,
        'rawText': row.raw_text or None,
        'cdeStatus': row.cde_status or None,
        'cdeComment': row.cde_comment or None,
        'cdeSource': row.cde_source or None,
        'isReviewed': bool(row.is_reviewed),
        'submittalValue': row.submittal_value or None,
        'submittalUnit': row.submittal_unit or None,
        'submittalLocation': row.submittal_location,
        'matchConfidence': row.match_confidence or None,
    } for row in db_rows]


# --- CDE Reports ---

def _parse_timestamp(value):
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def create_cde_report(name, spec_document_id, submittal_document_id, comparisons, project_id=None):
    report = CDEReport(project_id=project_id, name=name, spec_document_id=spec_document_id,
                       submittal_document_id=submittal_document_id, summary=summarize(comparisons))
    db.session.add(report)
    db.session.flush()

    stored = []
    for position, comp in enumerate(comparisons):
        db_comp = Comparison(
            cde_report_id=report.id,
            position=position,
            spec_field=comp.get('specField'),
            spec_value=comp.get('specValue'),
            spec_unit=comp.get('specUnit') or None,
            spec_section=comp.get('specSection') or None,
            spec_location=comp.get('specLocation'),
            submittal_field=comp.get('submittalField') or None,
            submittal_value=comp.get('submittalValue') or None,
            submittal_unit=comp.get('submittalUnit') or None,
            submittal_location=comp.get('submittalLocation') or None,
            status=comp.get('status') or 'pending',
            ai_explanation=comp.get('aiExplanation'),
            user_comment=comp.get('userComment') or None,
            match_confidence=comp.get('matchConfidence'),
            is_reviewed=bool(comp.get('isReviewed')),
            reviewed_at=_parse_timestamp(comp.get('reviewedAt')),
            reviewed_by=comp.get('reviewedBy') or None,
        )
        db.session.add(db_comp)
        stored.append(db_comp)

    db.session.commit()
    return report, stored


def get_cde_reports(project_id=None):
    query = CDEReport.query
    if project_id:
        query = query.filter_by(project_id=project_id)
    return query.order_by(CDEReport.created_at.desc()).all()


def get_cde_report(report_id):
    """(report, comparisons) or None."""
    report = db.session.get(CDEReport, report_id)
    if report is None:
        return None
    comparisons = (Comparison.query.filter_by(cde_report_id=report_id)
                   .order_by(Comparison.position).all())
    return report, comparisons


def update_comparison(comparison_id, status=None, user_comment=None, is_reviewed=None, reviewed_by=None):
    """Partial update; returns None when nothing was supplied or the row is absent."""
    if status is None and user_comment is None and is_reviewed is None and reviewed_by is None:
        return None
    comparison = db.session.get(Comparison, comparison_id)
    if comparison is None:
        return None
    if status:
        comparison.status = status
    if user_comment:
        comparison.user_comment = user_comment
    if is_reviewed is not None:
        comparison.is_reviewed = is_reviewed
    if is_reviewed:
        comparison.reviewed_at = datetime.utcnow()
    if reviewed_by:
        comparison.reviewed_by = reviewed_by
    db.session.commit()
    return comparison


def update_cde_report_summary(report_id):
    report = db.session.get(CDEReport, report_id)
    if report is None:
        return None
    comparisons = Comparison.query.filter_by(cde_report_id=report_id).all()
    report.summary = summarize([{'status': c.status, 'isReviewed': c.is_reviewed} for c in comparisons])
    report.updated_at = datetime.utcnow()
    db.session.commit()
    return report.summary


def delete_cde_report(report_id):
    report = db.session.get(CDEReport, report_id)
    if report is None:
        return False
    db.session.delete(report)
    db.session.commit()
    return True


def db_comparisons_to_results(db_comparisons):
    return [{
        'id': comp.id,
        'specField': comp.spec_field or '',
        'specValue': comp.spec_value or '',
        'specUnit': comp.spec_unit or None,
        'specSection': comp.spec_section or None,
        'specLocation': comp.spec_location,
        'submittalField': comp.submittal_field or None,
        'submittalValue': comp.submittal_value or None,
        'submittalUnit': comp.submittal_unit or None,
        'submittalLocation': comp.submittal_location,
        'status': comp.status,
        'aiExplanation': comp.ai_explanation or '',
        'userComment': comp.user_comment or None,
        'matchConfidence': comp.match_confidence or 'medium',
        'isReviewed': bool(comp.is_reviewed),
        'reviewedAt': comp.reviewed_at.isoformat() if comp.reviewed_at else None,
        'reviewedBy': comp.reviewed_by or None,
    } for comp in db_comparisons]
