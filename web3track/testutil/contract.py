"""Builders for small test contracts and their events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from Crypto.Hash import keccak


@dataclass
class _EventField:
    type_name: str
    indexed: bool


class Event:
    """A contract event with typed, optionally indexed fields."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.fields: list[_EventField] = []

    def add(self, type_name: str, indexed: bool) -> "Event":
        """Append a field and return the event for chaining."""
        self.fields.append(_EventField(type_name, bool(indexed)))
        return self

    def sig(self) -> str:
        """Return the 0x-prefixed keccak256 of the event signature."""
        signature = f"{self.name}({','.join(f.type_name for f in self.fields)})"
        return "0x" + keccak.new(digest_bits=256, data=signature.encode()).hexdigest()

    def _declaration(self) -> str:
        args = []
        for index, f in enumerate(self.fields):
            arg = f.type_name + (" indexed" if f.indexed else "")
            args.append(f"{arg} val_{index}")
        return f"event {self.name}({', '.join(args)});"

    def _setter(self) -> str:
        params = []
        for index, f in enumerate(self.fields):
            type_name = f.type_name
            if type_name == "string" or "[" in type_name:
                type_name += " memory"
            params.append(f"{type_name} val_{index}")
        body = ", ".join(f"val_{index}" for index in range(len(self.fields)))
        return (
            f"function setter{self.name}({', '.join(params)}) public payable {{\n"
            f"emit {self.name}({body});\n"
            "}"
        )


def new_event(name: str, *args) -> Event:
    """Create an event from alternating type names and indexed flags."""
    if len(args) % 2:
        raise ValueError("it should be even")
    event = Event(name)
    for type_name, indexed in zip(args[::2], args[1::2]):
        if not isinstance(type_name, str) or not isinstance(indexed, bool):
            raise TypeError("expected pairs of (type name, indexed flag)")
        event.add(type_name, indexed)
    return event


class Contract:
    """A contract named Sample assembled from generated sections."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self._sections: list[Callable[[], str]] = []

    def add_event(self, event: Event) -> None:
        """Declare an event and a setter function that emits it."""
        self._sections.append(event._declaration)
        self._sections.append(event._setter)
        self.events.append(event)

    def get_event(self, name: str) -> Optional[Event]:
        """Return the event called ``name``, or None."""
        return next((e for e in self.events if e.name == name), None)

    def render(self) -> str:
        """Return the contract's source text."""
        parts = [
            "pragma solidity ^0.5.5;\n",
            "pragma experimental ABIEncoderV2;\n",
            "\n",
            "contract Sample {\n",
        ]
        parts.extend(section() + "\n" for section in self._sections)
        parts.append("}")
        return "".join(parts)

    def add_constructor(self, *args: str) -> None:
        """Add public variables and a constructor that sets them."""

        def section() -> str:
            variables = "".join(f"{arg} public val_{i};\n" for i, arg in enumerate(args))
            inputs = ",".join(f"{arg} local_{i}" for i, arg in enumerate(args))
            body = "".join(f"val_{i} = local_{i};\n" for i in range(len(args)))
            return f"{variables}constructor({inputs}) public {{\n{body}}}"

        self._sections.append(section)

    def add_dual_caller(self, func_name: str, *args: str) -> None:
        """Add a view function that returns the values it is given."""

        def section() -> str:
            names = [f"val_{i}" for i in range(len(args))]
            params = ",".join(f"{arg} {name}" for arg, name in zip(args, names))
            return (
                f"function {func_name}({params}) public view returns ({','.join(args)}) {{\n"
                f"return ({','.join(names)});\n"
                "}"
            )

        self._sections.append(section)

    def emit_event(self, func_name: str, name: str, *args: str) -> None:
        """Add a function that emits event ``name`` with fixed arguments."""
        if self.get_event(name) is None:
            raise ValueError(f"event {name} does not exists")

        def section() -> str:
            return (
                f"function {func_name}() public payable {{\n"
                f"emit {name}({', '.join(args)});\n"
                "}"
            )

        self._sections.append(section)