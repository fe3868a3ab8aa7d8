"""Seed a small demo directory: one department, its approvers and three reports."""
from datetime import date

from leave_admin.database import SessionLocal, init_db
from leave_admin.models.department import Department
from leave_admin.models.employee import Employee


def create_employee(db, email, **fields):
    existing = db.query(Employee).filter(Employee.email == email).first()
    if existing:
        print(f"Employee {email} already exists. Skipping.")
        return existing
    employee = Employee(email=email, **fields)
    db.add(employee)
    db.flush()
    print(f"Created {employee.role} -> {email}")
    return employee


def seed():
    init_db()
    db = SessionLocal()
    try:
        department = db.query(Department).filter(Department.code == "ENG").first()
        if not department:
            department = Department(name="Engineering", code="ENG")
            db.add(department)
            db.flush()

        director = create_employee(db, "director@example.com", full_name="Demo Director", role="director",
                                   department_id=department.id, hire_date=date(2015, 1, 5))
        hr = create_employee(db, "hr@example.com", full_name="Demo HR", role="hr",
                             department_id=department.id, hire_date=date(2017, 3, 1))
        manager = create_employee(db, "manager@example.com", full_name="Demo Manager", role="manager",
                                  department_id=department.id, manager_id=director.id,
                                  hire_date=date(2019, 6, 1), delegates_auto_approval=True)
        for index in range(1, 4):
            create_employee(db, f"employee{index}@example.com", full_name=f"Demo Employee {index}",
                            role="employee", department_id=department.id, manager_id=manager.id,
                            hire_date=date(2022, index, 1))

        department.hr_approver_id = hr.id
        department.director_id = director.id
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    seed()
