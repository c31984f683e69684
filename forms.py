"""
Form schemas and the form-gated mutation.

A form is validated locally before anything is written. Field problems come
back as {field: [messages]}; a failed write comes back as one top-level error
and the submitted values are kept so the user can resubmit.
"""

import asyncio
import re
from typing import Any, Callable, ClassVar, Dict, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel, EmailStr, HttpUrl, TypeAdapter, ValidationError, ValidationInfo, field_validator
from pydantic_core import PydanticCustomError

from exceptions import FormValidationError, StudySyncError
from logging_config import logger
from schemas import ResourceType, Subject

MIN_PASSWORD_LENGTH = 6

URL_PATTERNS = {
    ResourceType.YOUTUBE: re.compile(
        r"^(https?://)?(www\.)?(youtube\.com|youtu\.?be|m\.youtube\.com|y2u\.be|yt\.be|music\.youtube\.com|"
        r"gaming\.youtube\.com|studio\.youtube\.com|shorts\.youtube\.com|youtube-nocookie\.com)/.+$"
    ),
    ResourceType.DRIVE: re.compile(r"^(https?://)?(drive\.google\.com)/.+$"),
}

_HTTP_URL = TypeAdapter(HttpUrl)
_EMAIL = TypeAdapter(EmailStr)


def _min_length(value: str, length: int, message: str) -> str:
    if len(value) < length:
        raise PydanticCustomError("too_short", message)
    return value


def _require_subject(value: Any) -> Subject:
    try:
        return Subject(value)
    except ValueError:
        raise PydanticCustomError("subject", "Please select a subject.")


def _require_email(value: str) -> str:
    try:
        return _EMAIL.validate_python(value)
    except ValidationError:
        raise PydanticCustomError("email", "Invalid email address.")


class FormSchema(BaseModel):
    """Base for forms. `defaults` are the values of an empty form."""
    defaults: ClassVar[Dict[str, Any]] = {}
    secret_fields: ClassVar[frozenset] = frozenset()


class DoubtForm(FormSchema):
    defaults: ClassVar[Dict[str, Any]] = {"subject": "", "description": ""}

    subject: Subject
    description: str

    @field_validator("subject", mode="before")
    @classmethod
    def _subject(cls, v):
        return _require_subject(v)

    @field_validator("description")
    @classmethod
    def _description(cls, v: str) -> str:
        return _min_length(v, 10, "Description must be at least 10 characters.")


class AnswerForm(FormSchema):
    defaults: ClassVar[Dict[str, Any]] = {"text": ""}

    text: str

    @field_validator("text")
    @classmethod
    def _text(cls, v: str) -> str:
        if not v.strip():
            raise PydanticCustomError("empty", "Please provide text for your answer.")
        return v


class ResourceForm(FormSchema):
    defaults: ClassVar[Dict[str, Any]] = {
        "topic": "",
        "subject": "",
        "description": "",
        "resource_type": "youtube",
        "url": "",
    }

    topic: str
    subject: Subject
    description: Optional[str] = None
    resource_type: ResourceType
    # declared after resource_type: its check reads the validated type
    url: str

    @field_validator("topic")
    @classmethod
    def _topic(cls, v: str) -> str:
        return _min_length(v, 5, "Topic must be at least 5 characters.")

    @field_validator("subject", mode="before")
    @classmethod
    def _subject(cls, v):
        return _require_subject(v)

    @field_validator("description")
    @classmethod
    def _description(cls, v: Optional[str]) -> Optional[str]:
        return v if v and v.strip() else None

    @field_validator("resource_type", mode="before")
    @classmethod
    def _resource_type(cls, v):
        try:
            return ResourceType(v)
        except ValueError:
            raise PydanticCustomError("resource_type", "You need to select a resource type.")

    @field_validator("url")
    @classmethod
    def _url(cls, v: str, info: ValidationInfo) -> str:
        try:
            _HTTP_URL.validate_python(v)
        except ValidationError:
            raise PydanticCustomError("url", "Please enter a valid URL.")
        pattern = URL_PATTERNS.get(info.data.get("resource_type"))
        if pattern is not None and not pattern.match(v):
            raise PydanticCustomError("url_pattern", "Please enter a valid URL for the selected resource type.")
        return v


class SignupForm(FormSchema):
    defaults: ClassVar[Dict[str, Any]] = {"name": "", "email": "", "password": ""}
    secret_fields: ClassVar[frozenset] = frozenset({"password"})

    name: str
    email: str
    password: str

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return _min_length(v, 2, "Name must be at least 2 characters.")

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return _require_email(v)

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _min_length(v, MIN_PASSWORD_LENGTH, f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


class LoginForm(FormSchema):
    defaults: ClassVar[Dict[str, Any]] = {"email": "", "password": ""}
    secret_fields: ClassVar[frozenset] = frozenset({"password"})

    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return _require_email(v)

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _min_length(v, MIN_PASSWORD_LENGTH, f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


F = TypeVar("F", bound=FormSchema)


def validate_form(form_cls: Type[F], raw: Dict[str, Any]) -> F:
    """Validate raw input against a form schema or raise FormValidationError."""
    data = {**form_cls.defaults, **(raw or {})}
    try:
        return form_cls.model_validate(data)
    except ValidationError as e:
        field_errors: Dict[str, List[str]] = {}
        for err in e.errors():
            name = str(err["loc"][0]) if err["loc"] else "__all__"
            field_errors.setdefault(name, []).append(err["msg"])
        raise FormValidationError(field_errors)


class FormState(Generic[F]):
    """
    Values, errors and result of one form.

    `submit(write)` validates, then runs `write(form)` exactly once in a
    worker thread. Values are cleared only after a successful write.
    """

    def __init__(self, form_cls: Type[F], values: Optional[Dict[str, Any]] = None):
        self.form_cls = form_cls
        self.values: Dict[str, Any] = {**form_cls.defaults, **(values or {})}
        self.field_errors: Dict[str, List[str]] = {}
        self.error: Optional[StudySyncError] = None
        self.result: Any = None
        self.submitting = False

    @property
    def ok(self) -> bool:
        return not self.field_errors and self.error is None

    async def submit(self, write: Callable[[F], Any]) -> bool:
        self.field_errors = {}
        self.error = None
        try:
            form = validate_form(self.form_cls, self.values)
        except FormValidationError as e:
            self.field_errors = e.field_errors
            return False

        self.submitting = True
        try:
            self.result = await asyncio.to_thread(write, form)
        except StudySyncError as e:
            logger.log_error_with_context(e, f"{self.form_cls.__name__} submit")
            self.error = e
            return False
        finally:
            self.submitting = False

        self.values = dict(self.form_cls.defaults)
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.ok,
            "values": {k: v for k, v in self.values.items() if k not in self.form_cls.secret_fields},
            "field_errors": self.field_errors,
            "error": self.error.to_dict() if self.error else None,
        }
