"""
Grade routes — bulk exam grade submission and publishing.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from gradebook.models import CallerContext
from gradebook.policy import BatchTarget, GradeEntry, submit_grades_batch
from gradebook.publishing import publish_grades_by_target
from gradebook.store import GradeStore
from routes.deps import get_caller, get_store

router = APIRouter()


class GradeEntryIn(BaseModel):
    studentId: str
    marksObtained: Optional[float] = None
    comments: Optional[str] = None


class GradeBatchIn(BaseModel):
    examScheduleId: str
    subjectId: str
    sectionId: str
    termId: str
    academicYearId: str
    grades: List[GradeEntryIn] = Field(default_factory=list)


class PublishTargetIn(BaseModel):
    sectionId: str
    examScheduleId: Optional[str] = None
    assignmentId: Optional[str] = None


@router.post("/exams")
def submit_exam_grades(
    school_id: str,
    body: GradeBatchIn,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Create or overwrite one exam's marks for a section, per the caller's role."""
    target = BatchTarget(
        school_id=school_id,
        exam_schedule_id=body.examScheduleId,
        subject_id=body.subjectId,
        section_id=body.sectionId,
        term_id=body.termId,
        academic_year_id=body.academicYearId,
    )
    entries = [GradeEntry(e.studentId, e.marksObtained, e.comments) for e in body.grades]
    return submit_grades_batch(store, caller, target, entries)


@router.post("/publish/by-target")
def publish_by_target(
    school_id: str,
    body: PublishTargetIn,
    caller: CallerContext = Depends(get_caller),
    store: GradeStore = Depends(get_store),
):
    """Publish every unpublished grade of one exam or assignment in a section."""
    return publish_grades_by_target(
        store,
        caller,
        section_id=body.sectionId,
        exam_schedule_id=body.examScheduleId,
        assignment_id=body.assignmentId,
    )
