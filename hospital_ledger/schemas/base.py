from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class LedgerSchema(BaseModel):
    """Accepts snake_case or camelCase input, emits camelCase."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )
