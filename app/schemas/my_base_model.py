import logging
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

_SIMPLE_DEFAULTS = {dict: dict, str: str, bool: bool, int: int, float: float}


class CustomBaseModel(BaseModel):
    """Custom base model for all response schemas.
    - pre-process the data before init
    - set the default value if the value is invalid
    """

    def __init__(self, **data: Any) -> None:
        for attr, value in data.items():
            attr_type = None
            me = self.__class__
            while attr_type is None and me is not CustomBaseModel:
                field = me.model_fields.get(attr)
                if field is not None:
                    attr_type = field.annotation
                    break
                if me.__base__ is None:
                    break
                me = me.__base__

            # process simple type
            if attr_type in _SIMPLE_DEFAULTS and value is not None:
                try:  #  try to convert the value to the type of the attribute
                    data[attr] = attr_type(value)
                except Exception:
                    logger.warning("Invalid value for key: %s, using default", attr)
                    field = me.model_fields[attr]
                    data[attr] = _SIMPLE_DEFAULTS[attr_type]() if field.is_required() else field.default
        super().__init__(**data)
