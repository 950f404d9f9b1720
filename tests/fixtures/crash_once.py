"""Pipeline stage: on the first start writes argv[2] and exits 1; later starts just wait.

argv[1] is a marker file recording that the first start happened.
"""
import os
import sys
import time


def main():
    marker, text = sys.argv[1], sys.argv[2]
    if os.path.exists(marker):
        time.sleep(60)
        return
    with open(marker, "w"):
        pass
    sys.stdout.write(text)
    sys.stdout.flush()
    sys.exit(1)


if __name__ == "__main__":
    main()
