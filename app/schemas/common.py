from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


# -------------------------------------------------------------------
# Wire format is camelCase; Python code uses snake_case attributes
# -------------------------------------------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class MessageResponse(BaseModel):
    message: str
