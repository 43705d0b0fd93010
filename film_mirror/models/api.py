"""
Pydantic models for payloads returned by the offstream.dk API.
"""

from pydantic import BaseModel, Field


class FilmGenre(BaseModel):
    id: str
    title: str


class FilmCountry(BaseModel):
    title: str
    code: str


class FilmYear(BaseModel):
    id: int
    title: str | None = None
    product_id: int | None = None


class FilmDetails(BaseModel):
    """The ``data`` object of a ``/films/load`` response."""

    title: str | None = None
    original_title: str | None = None
    director: str | None = None
    production_year: int | None = None
    duration: int | None = None
    description: str | None = None
    age_restriction: str | None = None
    thumbnails: dict[str, str] = Field(default_factory=dict)
    genres: list[FilmGenre] = Field(default_factory=list)
    countries: list[FilmCountry] = Field(default_factory=list)
    year: FilmYear
    competitions: list[str] = Field(default_factory=list)


class FilmStatusPayload(BaseModel):
    """The ``status`` object of a ``/films/load`` response."""

    status: str
    vimeo_id: str | None = None
    greeting_vimeo_id: str | None = None


class FilmResponse(BaseModel):
    data: FilmDetails
    status: FilmStatusPayload
