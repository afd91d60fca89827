# filename: target.py

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from ..exceptions import InvalidTargetConfig


class AllUsers(BaseModel):
    """Every user in the user store"""
    segment_type: Literal['all'] = 'all'


class ByTag(BaseModel):
    """Users holding at least one of the given tags"""
    segment_type: Literal['tag'] = 'tag'
    tag_ids: List[str] = Field(min_length=1)

    @field_validator('tag_ids', mode='before')
    @classmethod
    def _stringify(cls, value):
        if isinstance(value, list):
            return [str(tag_id) for tag_id in value]
        return value


class External(BaseModel):
    """Literal addresses with no backing user"""
    segment_type: Literal['external'] = 'external'
    external_emails: List[str] = Field(min_length=1)


TargetConfig = Annotated[Union[AllUsers, ByTag, External], Field(discriminator='segment_type')]

_target_adapter = TypeAdapter(TargetConfig)


def parse_target_config(raw: Optional[Dict[str, Any]]) -> Union[AllUsers, ByTag, External]:
    """
    Turn the stored target_config JSON into one of the closed variants.
    A missing config or missing segment_type means all users.
    """
    if raw is None:
        return AllUsers()
    if isinstance(raw, (AllUsers, ByTag, External)):
        return raw
    data = dict(raw)
    data.setdefault('segment_type', 'all')
    try:
        return _target_adapter.validate_python(data)
    except ValidationError as e:
        raise InvalidTargetConfig(f"Invalid target configuration: {e}") from e


def dump_target_config(target: Union[AllUsers, ByTag, External]) -> Dict[str, Any]:
    return target.model_dump(mode='json')
