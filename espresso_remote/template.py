"""Placeholder substitution for job scripts and submission commands.

Three equivalent spellings are recognised for a placeholder ``NAME``::

    $NAME      $(NAME)      ${NAME}

Substitution is a single left-to-right pass: a replacement value is copied
to the output verbatim and never re-scanned, so values containing ``$`` or
regex metacharacters are safe. Placeholders whose name is not bound (shell
variables such as ``${PBS_O_WORKDIR}``) are left untouched.
"""

from __future__ import annotations

from collections.abc import Mapping

# Placeholder vocabulary
JOB_SCRIPT = "JOB_SCRIPT"
QE_COMMAND = "QUANTUM_ESPRESSO_COMMAND"
NUM_CPUS = "NCPU"
NUM_MPIS = "NMPI"
NUM_OMPS = "NOMP"
MODULE_COMMANDS = "MODULE_COMMANDS"

_CLOSERS = {"(": ")", "{": "}"}


def _is_name_char(char: str) -> bool:
    return char.isascii() and (char.isalnum() or char == "_")


def substitute(text: str, bindings: Mapping[str, str]) -> str:
    """Replace bound placeholders in ``text``.

    Args:
        text: Template text.
        bindings: Placeholder name → replacement value.

    Returns:
        The text with every bound ``$NAME``, ``$(NAME)`` and ``${NAME}``
        replaced. A bare ``$NAME`` consumes the longest run of name
        characters, so ``$NCPUS`` does not match a binding for ``NCPU``.
    """
    out: list[str] = []
    i = 0
    n = len(text)
    while i < n:
        char = text[i]
        if char != "$" or i + 1 >= n:
            out.append(char)
            i += 1
            continue

        nxt = text[i + 1]
        if nxt in _CLOSERS:
            end = text.find(_CLOSERS[nxt], i + 2)
            name = text[i + 2 : end] if end >= 0 else ""
            if name and all(_is_name_char(c) for c in name) and name in bindings:
                out.append(bindings[name])
                i = end + 1
                continue
        elif _is_name_char(nxt):
            j = i + 1
            while j < n and _is_name_char(text[j]):
                j += 1
            name = text[i + 1 : j]
            if name in bindings:
                out.append(bindings[name])
                i = j
                continue

        out.append(char)
        i += 1
    return "".join(out)


def processor_bindings(num_mpi: int, num_omp: int) -> dict[str, str]:
    """Bindings for the process-count placeholders.

    ``NMPI`` and ``NOMP`` are bound only when at least 1. ``NCPU`` is the
    product of the non-negative counts and is likewise bound only when >= 1.
    """
    bindings: dict[str, str] = {}
    if num_mpi >= 1:
        bindings[NUM_MPIS] = str(num_mpi)
    if num_omp >= 1:
        bindings[NUM_OMPS] = str(num_omp)
    num_cpu = max(0, num_mpi) * max(0, num_omp)
    if num_cpu >= 1:
        bindings[NUM_CPUS] = str(num_cpu)
    return bindings
