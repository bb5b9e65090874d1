import math


class BaseType:

    def __init__(self):
        raise Exception("Cannot instantiate")

    @staticmethod
    def validate():
        raise NotImplementedError("Subclasses should implement this!")


class NumberType(BaseType):

    @staticmethod
    def validate(value):
        # bool is an int subclass but never a valid terminal dimension
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError("Value must be a number.")
        # JSON literals like 1e400 decode to inf
        if isinstance(value, float) and not math.isfinite(value):
            raise TypeError("Value must be a finite number.")


class StringType(BaseType):

    @staticmethod
    def validate(value):
        if not isinstance(value, str):
            raise TypeError("Value must be a string.")


class NonEmptyStringType(BaseType):

    @staticmethod
    def validate(value):
        if not isinstance(value, str) or not value.strip():
            raise TypeError("Value must be a non-empty string.")


class OptionalType(BaseType):

    def __init__(self, item_type):
        self.item_type = item_type

    def validate(self, value):
        if value is not None:
            self.item_type.validate(value)


def validate_contract(contract, data):
    if not isinstance(data, dict):
        raise TypeError("Message must be a JSON object.")
    for key, value in contract.items():
        if key not in data:
            if isinstance(value, OptionalType):
                continue
            raise KeyError(key)
        if isinstance(value, dict):
            validate_contract(value, data[key])
        else:
            try:
                value.validate(data[key])
            except TypeError as e:
                raise TypeError(f"{key}: {e}")


class ContractValidationError(Exception):
    """Exception raised when contract validation fails."""

    def __init__(self, error_type: str, message: str):
        self.error_type = error_type
        self.message = message
        super().__init__(message)


def check_contract(contract, data) -> None:
    """
    Validate data against a contract, normalising failures.

    Args:
        contract: The contract schema to validate against
        data: The decoded message

    Raises:
        ContractValidationError: error_type is "missing_field" or
            "invalid_type", message is suitable for an error envelope context
    """
    try:
        validate_contract(contract, data)
    except KeyError as e:
        raise ContractValidationError(
            "missing_field", f"Missing required field: {e.args[0]}"
        )
    except TypeError as e:
        raise ContractValidationError("invalid_type", f"Invalid field type: {e}")
