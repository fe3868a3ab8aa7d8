"""
Employee Model.
Directory record consumed read-only by the leave core (hire date, department,
manager chain, employment type, jurisdiction).
"""
from sqlalchemy import Column, Integer, String, Date, DateTime, Boolean, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum
from leave_admin.database import Base


class EmployeeRole(str, enum.Enum):
    EMPLOYEE = "employee"
    MANAGER = "manager"
    HR = "hr"
    DIRECTOR = "director"
    ADMIN = "admin"


class EmploymentType(str, enum.Enum):
    FULL_TIME = "full_time"
    PART_TIME = "part_time"
    CONTRACT = "contract"
    INTERN = "intern"


class Employee(Base):
    __tablename__ = "employees"

    id = Column(Integer, primary_key=True, index=True)
    full_name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    role = Column(String, default=EmployeeRole.EMPLOYEE.value, nullable=False)

    department_id = Column(Integer, ForeignKey("departments.id"), nullable=True, index=True)
    manager_id = Column(Integer, ForeignKey("employees.id"), nullable=True)

    hire_date = Column(Date, nullable=False)
    employment_type = Column(String, default=EmploymentType.FULL_TIME.value, nullable=False)
    jurisdiction = Column(String, nullable=True)  # e.g. "US-CA", "IN-KA"
    gender = Column(String, nullable=True)

    # Managers opt in to auto-approval of short requests from their reports
    delegates_auto_approval = Column(Boolean, default=False, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    department = relationship("Department", back_populates="employees")
    manager = relationship("Employee", remote_side=[id])

    def __repr__(self):
        return f"<Employee {self.id} {self.email} ({self.role})>"
