# app/db/base.py

"""
This file imports all the ORM models so Alembic can discover them.
Whenever you add a new model, import it here.
"""
from app.db.models.user import User
from app.db.models.business import Business, Service, Employee
from app.db.models.appointment import Appointment, AppointmentStatusChange
from app.db.models.billing import Subscription, Payment, ProcessedPayment
from app.db.session import Base
