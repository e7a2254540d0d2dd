class CrmError(Exception):
    """Base error. Carries the HTTP status and a machine readable code for the API envelope."""
    status_code = 400
    code = 'error'

    def __init__(self, message, field=None, payload=None, status_code=None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.payload = payload or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self):
        data = {'code': self.code, 'message': self.message}
        if self.field:
            data['field'] = self.field
        data.update(self.payload)
        return data


class ValidationError(CrmError):
    status_code = 400
    code = 'validation_error'


class InvalidStatus(CrmError):
    status_code = 400
    code = 'invalid_status'


class AuthenticationError(CrmError):
    status_code = 401
    code = 'unauthorized'


class Forbidden(CrmError):
    status_code = 403
    code = 'forbidden'


class NotFound(CrmError):
    status_code = 404
    code = 'not_found'


class NoEligibleUser(CrmError):
    status_code = 409
    code = 'no_eligible_user'


class MessagingError(CrmError):
    status_code = 502
    code = 'messaging_error'
