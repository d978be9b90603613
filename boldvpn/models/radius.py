"""FreeRADIUS reply attributes.

The table layout is owned by FreeRADIUS; only the columns it defines are mapped.
"""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from boldvpn.db import Base

SIMULTANEOUS_USE = "Simultaneous-Use"


class RadReply(Base):
    __tablename__ = "radreply"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, default="", index=True)
    attribute: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    op: Mapped[str] = mapped_column(String(2), nullable=False, default=":=")
    value: Mapped[str] = mapped_column(String(253), nullable=False, default="")
