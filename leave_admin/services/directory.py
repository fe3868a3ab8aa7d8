"""
Employee Directory lookup.

Read-only adapter over the employees/departments tables. The leave core only
ever asks for profiles and department membership; it never writes here.
"""
from typing import List, Optional

from sqlalchemy.orm import Session

from leave_admin.core.exceptions import NotFoundError
from leave_admin.models.department import Department
from leave_admin.models.employee import Employee
from leave_admin.schemas.policy import EmployeeProfile


class EmployeeDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get(self, employee_id: int) -> EmployeeProfile:
        employee = self.db.get(Employee, employee_id)
        if not employee:
            raise NotFoundError("Employee", employee_id)
        return self._to_profile(employee)

    def find(self, employee_id: Optional[int]) -> Optional[EmployeeProfile]:
        if employee_id is None:
            return None
        employee = self.db.get(Employee, employee_id)
        return self._to_profile(employee) if employee else None

    def department_member_ids(self, department_id: int) -> List[int]:
        rows = self.db.query(Employee.id).filter(
            Employee.department_id == department_id,
            Employee.is_active.is_(True)
        ).all()
        return [row.id for row in rows]

    def active_employee_ids(self) -> List[int]:
        rows = self.db.query(Employee.id).filter(Employee.is_active.is_(True)).order_by(Employee.id).all()
        return [row.id for row in rows]

    def _to_profile(self, employee: Employee) -> EmployeeProfile:
        manager = self.db.get(Employee, employee.manager_id) if employee.manager_id else None
        department = self.db.get(Department, employee.department_id) if employee.department_id else None
        return EmployeeProfile(
            id=employee.id,
            full_name=employee.full_name,
            role=employee.role,
            department_id=employee.department_id,
            manager_id=employee.manager_id,
            hire_date=employee.hire_date,
            employment_type=employee.employment_type,
            jurisdiction=employee.jurisdiction,
            gender=employee.gender,
            is_active=employee.is_active,
            manager_delegates_auto_approval=bool(manager and manager.delegates_auto_approval),
            hr_approver_id=department.hr_approver_id if department else None,
            director_id=department.director_id if department else None,
        )
