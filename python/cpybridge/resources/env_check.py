"""Companion environment check.

Prints one line per problem and nothing at all when the interpreter can host
the companion server.
"""

import sys
import warnings

MIN_VERSION = (3, 8)
REQUIRED_MODULES = ("numpy", "pandas")


def main():
    problems = []
    if sys.version_info < MIN_VERSION:
        problems.append(
            "Python %d.%d or newer is required, found %s"
            % (MIN_VERSION[0], MIN_VERSION[1], sys.version.split()[0])
        )
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        for module in REQUIRED_MODULES:
            try:
                __import__(module)
            except ImportError as exc:
                problems.append("Library %s is not available: %s" % (module, exc))
    for problem in problems:
        print(problem)


if __name__ == "__main__":
    main()
