import enum
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores REFERENCES clauses unless this pragma is on for the connection
    if type(dbapi_connection).__module__.startswith("sqlite3"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


class ProjectStatus(str, enum.Enum):
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    ON_HOLD = 'on_hold'


class TaskPriority(str, enum.Enum):
    HIGH = 'high'
    MEDIUM = 'medium'
    LOW = 'low'


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    RECEIVED = 'received'


def _enum_column(enum_cls, name):
    return db.Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class Client(db.Model):
    __tablename__ = 'clients'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String, nullable=False)
    email = db.Column(db.String, nullable=False)
    phone = db.Column(db.String)
    company = db.Column(db.String)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    projects = db.relationship('Project', back_populates='client', lazy=True, passive_deletes='all')


class Project(db.Model):
    __tablename__ = 'projects'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String, nullable=False)
    description = db.Column(db.Text)
    client_id = db.Column(db.Integer, db.ForeignKey('clients.id'), nullable=False, index=True)
    status = db.Column(
        _enum_column(ProjectStatus, 'project_status'),
        default=ProjectStatus.IN_PROGRESS,
        nullable=False,
    )
    deadline = db.Column(db.DateTime)
    amount = db.Column(db.Numeric(10, 2))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    client = db.relationship('Client', back_populates='projects', lazy='joined')
    tasks = db.relationship('Task', back_populates='project', lazy=True, passive_deletes='all')
    payments = db.relationship('Payment', back_populates='project', lazy=True, passive_deletes='all')


class Task(db.Model):
    __tablename__ = 'tasks'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String, nullable=False)
    description = db.Column(db.Text)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False, index=True)
    priority = db.Column(
        _enum_column(TaskPriority, 'task_priority'),
        default=TaskPriority.MEDIUM,
        nullable=False,
    )
    deadline = db.Column(db.DateTime)
    is_completed = db.Column(db.Boolean, default=False, nullable=False)
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    project = db.relationship('Project', back_populates='tasks', lazy='joined')


class Payment(db.Model):
    __tablename__ = 'payments'
    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String, nullable=False)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    payment_method = db.Column(db.String)
    status = db.Column(
        _enum_column(PaymentStatus, 'payment_status'),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    due_date = db.Column(db.DateTime)
    received_at = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.now, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    project = db.relationship('Project', back_populates='payments', lazy='joined')


class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String, unique=True, nullable=False)
    password = db.Column(db.String, nullable=False)
