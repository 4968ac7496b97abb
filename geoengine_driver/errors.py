"""

Error handling of the Geo Engine backend.

All errors that should reach a client as a structured JSON error object
derive from `GeoEngineApiException`, which carries a textual error code
and the HTTP status code to respond with.

"""
from typing import Optional

from openeo.util import dict_no_none

from geoengine_driver.utils import generate_unique_id


class GeoEngineApiException(Exception):
    """
    Exception that wraps the fields/data necessary for API compliant status/error handling

    required fields:
     - code: standardized textual error code
     - message: human readable explanation

    optional:
     - id: unique identifier for referencing between API responses and server logs
     - url: link to resource that explains error/solutions
    """

    status_code = 500
    code = "Internal"
    message = "Unspecified Internal Error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        id: Optional[str] = None,
        url: Optional[str] = None,
    ):
        super().__init__(message or self.message)
        self.message = message or self.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.id = id or generate_unique_id(prefix="e")
        self.url = url

    def __str__(self):
        return self.message

    def to_dict(self) -> dict:
        return dict_no_none(id=self.id, code=self.code, message=self.message, url=self.url)


class InternalException(GeoEngineApiException):
    status_code = 500
    code = "Internal"
    message = "Server error: {message}"

    def __init__(self, message: str = "n/a"):
        super().__init__(message=self.message.format(message=message))


# Validation errors (client input is malformed)


class ValidationException(GeoEngineApiException):
    """Base class for errors detected while validating a workflow or query, before any execution."""

    status_code = 400
    code = "ValidationError"
    message = "Invalid input."


class WorkflowInvalidException(ValidationException):
    code = "WorkflowInvalid"
    message = "Invalid workflow: {reason}"

    def __init__(self, reason: str):
        super().__init__(message=self.message.format(reason=reason))


class UnknownOperatorTypeException(ValidationException):
    code = "UnknownOperatorType"
    message = "Operator type {operator!r} is not available."

    def __init__(self, operator: str):
        super().__init__(message=self.message.format(operator=operator))
        self.operator = operator


class ParameterSchemaMismatchException(ValidationException):
    code = "ParameterSchemaMismatch"
    message = "Parameter {parameter!r} of operator {operator!r} is invalid: {reason}"

    def __init__(self, operator: str, parameter: str, reason: str):
        super().__init__(message=self.message.format(operator=operator, parameter=parameter, reason=reason))
        self.operator = operator
        self.parameter = parameter


class ChildArityMismatchException(ValidationException):
    code = "ChildArityMismatch"
    message = "Operator {operator!r} expects {expected} in source slot {slot!r}, but got {actual}."

    def __init__(self, operator: str, slot: str, expected: str, actual: int):
        super().__init__(
            message=self.message.format(operator=operator, slot=slot, expected=expected, actual=actual)
        )


class ChildTypeMismatchException(ValidationException):
    code = "ChildTypeMismatch"
    message = "Operator {operator!r} expects {expected} in source slot {slot!r}, but got {actual} (from {child!r})."

    def __init__(self, operator: str, slot: str, expected: str, actual: str, child: str):
        super().__init__(
            message=self.message.format(operator=operator, slot=slot, expected=expected, actual=actual, child=child)
        )


class MaxDepthExceededException(ValidationException):
    code = "MaxDepthExceeded"
    message = "Workflow exceeds maximum operator nesting depth of {max_depth}."

    def __init__(self, max_depth: int):
        super().__init__(message=self.message.format(max_depth=max_depth))


class InvalidQueryParameterException(ValidationException):
    code = "InvalidQueryParameter"
    message = "Invalid query parameter {parameter!r}: {reason}"

    def __init__(self, parameter: str, reason: str):
        super().__init__(message=self.message.format(parameter=parameter, reason=reason))
        self.parameter = parameter


# Not found errors


class WorkflowNotFoundException(GeoEngineApiException):
    status_code = 404
    code = "WorkflowNotFound"
    message = "Workflow {workflow_id!r} does not exist."

    def __init__(self, workflow_id: str):
        super().__init__(message=self.message.format(workflow_id=workflow_id))


class DatasetNotFoundException(GeoEngineApiException):
    status_code = 404
    code = "DatasetNotFound"
    message = "Dataset {dataset!r} does not exist."

    def __init__(self, dataset: str):
        super().__init__(message=self.message.format(dataset=dataset))


class ProviderNotFoundException(GeoEngineApiException):
    status_code = 404
    code = "ProviderNotFound"
    message = "Dataset provider {provider!r} does not exist."

    def __init__(self, provider: str):
        super().__init__(message=self.message.format(provider=provider))


class PermissionDeniedException(GeoEngineApiException):
    status_code = 403
    code = "PermissionDenied"
    message = "No permission to access {resource!r}."

    def __init__(self, resource: str):
        super().__init__(message=self.message.format(resource=resource))


# Upstream/collaborator errors


class ProviderUnavailableException(GeoEngineApiException):
    status_code = 503
    code = "ProviderUnavailable"
    message = "Dataset provider {provider!r} is unavailable: {reason}"

    def __init__(self, provider: str, reason: str = "n/a"):
        super().__init__(message=self.message.format(provider=provider, reason=reason))


class ExecutionCancelledException(GeoEngineApiException):
    # Non-standard status code (as used by nginx) for "client closed request"
    status_code = 499
    code = "ExecutionCancelled"
    message = "Execution of workflow {workflow_id!r} was cancelled."

    def __init__(self, workflow_id: str = "n/a"):
        super().__init__(message=self.message.format(workflow_id=workflow_id))


# Authentication


class AuthenticationRequiredException(GeoEngineApiException):
    status_code = 401
    code = "AuthenticationRequired"
    message = "Unauthorized."


class AuthenticationSchemeInvalidException(GeoEngineApiException):
    status_code = 403
    code = "AuthenticationSchemeInvalid"
    message = "Authentication method not supported."


class TokenInvalidException(GeoEngineApiException):
    status_code = 403
    code = "TokenInvalid"
    message = "Authorization token has expired or is invalid. Please authenticate again."


class CredentialsInvalidException(GeoEngineApiException):
    status_code = 403
    code = "CredentialsInvalid"
    message = "Credentials are not correct."
