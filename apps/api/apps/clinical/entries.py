"""
Typed clinical entries stored as ordered JSON lists on a Consultation.

Payloads from the API are validated into these records before they touch
the aggregate; ``to_dict`` produces the stored form.
"""
from dataclasses import asdict, dataclass, fields
from datetime import date
from typing import Dict, Optional

from .exceptions import InvalidRequest


DIAGNOSIS_TYPES = ('principal', 'secondary', 'differential')


def _require_text(payload: Dict, key: str, entry: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{entry}.{key} is required", field=key)
    return value.strip()


def _optional_text(payload: Dict, key: str, entry: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidRequest(f"{entry}.{key} must be a string", field=key)
    return value.strip() or None


def _flag(payload: Dict, key: str, entry: str) -> bool:
    value = payload.get(key, False)
    if not isinstance(value, bool):
        raise InvalidRequest(f"{entry}.{key} must be a boolean", field=key)
    return value


def _reject_unknown(payload: Dict, cls, entry: str):
    if not isinstance(payload, dict):
        raise InvalidRequest(f"{entry} must be an object")
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise InvalidRequest(f"Unknown {entry} fields: {', '.join(unknown)}", fields=unknown)


@dataclass
class Diagnosis:
    code: str  # ICD-10
    description: str
    type: str = 'principal'
    notes: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict) -> 'Diagnosis':
        _reject_unknown(payload, cls, 'diagnosis')
        diagnosis_type = payload.get('type') or 'principal'
        if diagnosis_type not in DIAGNOSIS_TYPES:
            raise InvalidRequest(
                f"diagnosis.type must be one of: {', '.join(DIAGNOSIS_TYPES)}",
                field='type',
            )
        return cls(
            code=_require_text(payload, 'code', 'diagnosis').upper(),
            description=_require_text(payload, 'description', 'diagnosis'),
            type=diagnosis_type,
            notes=_optional_text(payload, 'notes', 'diagnosis'),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Prescription:
    medication: str
    dosage: str
    frequency: str
    duration: str
    route: Optional[str] = None  # oral, IV, IM, topical
    instructions: Optional[str] = None
    is_controlled: bool = False

    @classmethod
    def from_payload(cls, payload: Dict) -> 'Prescription':
        _reject_unknown(payload, cls, 'prescription')
        return cls(
            medication=_require_text(payload, 'medication', 'prescription'),
            dosage=_require_text(payload, 'dosage', 'prescription'),
            frequency=_require_text(payload, 'frequency', 'prescription'),
            duration=_require_text(payload, 'duration', 'prescription'),
            route=_optional_text(payload, 'route', 'prescription'),
            instructions=_optional_text(payload, 'instructions', 'prescription'),
            is_controlled=_flag(payload, 'is_controlled', 'prescription'),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class OrderedExam:
    name: str
    type: Optional[str] = None  # laboratory, imaging, procedure
    instructions: Optional[str] = None
    is_urgent: bool = False
    results: Optional[str] = None
    result_date: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict) -> 'OrderedExam':
        _reject_unknown(payload, cls, 'exam')
        # Results are recorded later through record_exam_result
        if payload.get('results') or payload.get('result_date'):
            raise InvalidRequest('exam results cannot be set when ordering', field='results')
        return cls(
            name=_require_text(payload, 'name', 'exam'),
            type=_optional_text(payload, 'type', 'exam'),
            instructions=_optional_text(payload, 'instructions', 'exam'),
            is_urgent=_flag(payload, 'is_urgent', 'exam'),
        )

    @classmethod
    def from_stored(cls, data: Dict) -> 'OrderedExam':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def with_result(self, results: str, result_date: Optional[date] = None) -> 'OrderedExam':
        if not isinstance(results, str) or not results.strip():
            raise InvalidRequest('exam results are required', field='results')
        return OrderedExam(
            name=self.name,
            type=self.type,
            instructions=self.instructions,
            is_urgent=self.is_urgent,
            results=results.strip(),
            result_date=(result_date or date.today()).isoformat(),
        )

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class PhysicalExamination:
    general_appearance: Optional[str] = None
    head: Optional[str] = None
    eyes: Optional[str] = None
    ears: Optional[str] = None
    nose: Optional[str] = None
    throat: Optional[str] = None
    neck: Optional[str] = None
    chest: Optional[str] = None
    lungs: Optional[str] = None
    heart: Optional[str] = None
    abdomen: Optional[str] = None
    extremities: Optional[str] = None
    skin: Optional[str] = None
    neurological: Optional[str] = None
    musculoskeletal: Optional[str] = None
    other: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict) -> 'PhysicalExamination':
        _reject_unknown(payload, cls, 'physical_examination')
        return cls(**{
            f.name: _optional_text(payload, f.name, 'physical_examination')
            for f in fields(cls)
        })

    def to_dict(self) -> Dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


# Collection name on the model -> entry type
COLLECTIONS = {
    'diagnoses': Diagnosis,
    'prescriptions': Prescription,
    'ordered_exams': OrderedExam,
}
