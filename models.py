# models.py
import uuid
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _new_id():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class Project(db.Model):
    __tablename__ = 'projects'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    user_id = db.Column(db.String(255), nullable=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    documents = db.relationship('Document', backref='project', cascade='all, delete-orphan')
    reports = db.relationship('CDEReport', backref='project', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'user_id': self.user_id,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def __repr__(self):
        return f'<Project {self.id}: {self.name}>'


class Document(db.Model):
    __tablename__ = 'documents'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    blob_url = db.Column(db.String(1024), nullable=False)
    page_count = db.Column(db.Integer, nullable=True)
    manufacturer = db.Column(db.String(255), nullable=True)
    model = db.Column(db.String(255), nullable=True)
    uploaded_at = db.Column(db.DateTime, default=datetime.utcnow)

    extractions = db.relationship('Extraction', backref='document', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'name': self.name,
            'type': self.type,
            'blob_url': self.blob_url,
            'page_count': self.page_count,
            'manufacturer': self.manufacturer,
            'model': self.model,
            'uploaded_at': _iso(self.uploaded_at),
        }

    def __repr__(self):
        return f'<Document {self.id}: {self.name} ({self.type})>'


class Extraction(db.Model):
    __tablename__ = 'extractions'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    document_id = db.Column(db.String(36), db.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False)
    document_type = db.Column(db.String(20), nullable=True)
    total_rows = db.Column(db.Integer, nullable=True)
    processing_time = db.Column(db.Float, nullable=True)
    # "metadata" is reserved on declarative models
    extraction_metadata = db.Column('metadata', db.JSON, nullable=True)
    extracted_at = db.Column(db.DateTime, default=datetime.utcnow)

    rows = db.relationship('ExtractedRow', backref='extraction', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'document_id': self.document_id,
            'document_type': self.document_type,
            'total_rows': self.total_rows,
            'processing_time': self.processing_time,
            'metadata': self.extraction_metadata,
            'extracted_at': _iso(self.extracted_at),
        }


class ExtractedRow(db.Model):
    __tablename__ = 'extracted_rows'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    extraction_id = db.Column(db.String(36), db.ForeignKey('extractions.id', ondelete='CASCADE'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    field = db.Column(db.Text, nullable=True)
    value = db.Column(db.Text, nullable=True)
    unit = db.Column(db.String(255), nullable=True)
    section = db.Column(db.String(255), nullable=True)
    spec_number = db.Column(db.String(255), nullable=True)
    confidence = db.Column(db.String(10), nullable=True)
    page_number = db.Column(db.Integer, nullable=True)
    location = db.Column(db.JSON, nullable=True)
    raw_text = db.Column(db.Text, nullable=True)

    # review state
    cde_status = db.Column(db.String(20), nullable=True)
    cde_comment = db.Column(db.Text, nullable=True)
    cde_source = db.Column(db.String(10), nullable=True)
    is_reviewed = db.Column(db.Boolean, nullable=False, default=False)
    submittal_value = db.Column(db.Text, nullable=True)
    submittal_unit = db.Column(db.String(255), nullable=True)
    submittal_location = db.Column(db.JSON, nullable=True)
    match_confidence = db.Column(db.String(10), nullable=True)
    updated_at = db.Column(db.DateTime, nullable=True)

    def __repr__(self):
        return f'<ExtractedRow {self.id}: {self.field}>'


class CDEReport(db.Model):
    __tablename__ = 'cde_reports'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    project_id = db.Column(db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'), nullable=True)
    name = db.Column(db.String(255), nullable=False)
    spec_document_id = db.Column(db.String(36), db.ForeignKey('documents.id', ondelete='SET NULL'), nullable=True)
    submittal_document_id = db.Column(db.String(36), db.ForeignKey('documents.id', ondelete='SET NULL'), nullable=True)
    summary = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    comparisons = db.relationship('Comparison', backref='report', cascade='all, delete-orphan',
                                  order_by='Comparison.position')

    def to_dict(self):
        return {
            'id': self.id,
            'project_id': self.project_id,
            'name': self.name,
            'spec_document_id': self.spec_document_id,
            'submittal_document_id': self.submittal_document_id,
            'summary': self.summary,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Comparison(db.Model):
    __tablename__ = 'comparisons'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    cde_report_id = db.Column(db.String(36), db.ForeignKey('cde_reports.id', ondelete='CASCADE'), nullable=False)
    position = db.Column(db.Integer, nullable=False, default=0)
    spec_field = db.Column(db.Text, nullable=True)
    spec_value = db.Column(db.Text, nullable=True)
    spec_unit = db.Column(db.String(255), nullable=True)
    spec_section = db.Column(db.String(255), nullable=True)
    spec_location = db.Column(db.JSON, nullable=True)
    submittal_field = db.Column(db.Text, nullable=True)
    submittal_value = db.Column(db.Text, nullable=True)
    submittal_unit = db.Column(db.String(255), nullable=True)
    submittal_location = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='pending')
    ai_explanation = db.Column(db.Text, nullable=True)
    user_comment = db.Column(db.Text, nullable=True)
    match_confidence = db.Column(db.String(10), nullable=True)
    is_reviewed = db.Column(db.Boolean, nullable=False, default=False)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    reviewed_by = db.Column(db.String(255), nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'cde_report_id': self.cde_report_id,
            'spec_field': self.spec_field,
            'spec_value': self.spec_value,
            'spec_unit': self.spec_unit,
            'spec_section': self.spec_section,
            'spec_location': self.spec_location,
            'submittal_field': self.submittal_field,
            'submittal_value': self.submittal_value,
            'submittal_unit': self.submittal_unit,
            'submittal_location': self.submittal_location,
            'status': self.status,
            'ai_explanation': self.ai_explanation,
            'user_comment': self.user_comment,
            'match_confidence': self.match_confidence,
            'is_reviewed': self.is_reviewed,
            'reviewed_at': _iso(self.reviewed_at),
            'reviewed_by': self.reviewed_by,
        }
