from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    display_name: str
    photo_url: Optional[str]
