#!/usr/bin/env python3
"""
Build a PKCS#12 keystore or trust store from PEM certificate and key files.

Every .crt, .key and .pem file found in the given directories (plus any
file named explicitly) is read. CA certificates become roots or
intermediates, a single non-CA certificate becomes the end-entity
certificate, and a single private key may accompany it. With a key the
output is a keystore; without one it is a trust store of the CA chain.

Each option can also be set through an environment variable
(KSBUILDER_OUT, KSBUILDER_PASSWORD, KSBUILDER_DIR, KSBUILDER_FILE,
KSBUILDER_RECURSIVE).
"""

import argparse
import os
import sys

from cert_lib import ConfigurationError, KsBuilderError, WriteError, collect_files, load_objects
from keystore import Keystore, assemble

DEFAULT_PASSWORD = "changeit"
OUTPUT_MODE = 0o644
TRUE_VALUES = ("1", "true", "yes", "on")


def split_list(values, env_value=None):
    """Flatten repeated and comma-separated option values, falling back to the env var."""
    if not values:
        values = [env_value] if env_value else []
    return [item.strip() for value in values for item in value.split(",") if item.strip()]


def parse_args(argv=None, environ=None):
    environ = os.environ if environ is None else environ
    parser = argparse.ArgumentParser(
        description="Build a PKCS#12 keystore or trust store from PEM certificates and keys."
    )
    parser.add_argument("-d", "--dir", dest="dirs", action="append",
                        help="directory to add files from (repeatable, comma-separated)")
    parser.add_argument("-f", "--file", dest="files", action="append",
                        help="certificate or key file to add (repeatable, comma-separated)")
    parser.add_argument("-o", "--out", default=environ.get("KSBUILDER_OUT"),
                        help="path to output file")
    parser.add_argument("-p", "--password", default=environ.get("KSBUILDER_PASSWORD"),
                        help="keystore password for output file")
    parser.add_argument("-r", "--recursive", action="store_true",
                        default=environ.get("KSBUILDER_RECURSIVE", "").lower() in TRUE_VALUES,
                        help="recurse directories")
    args = parser.parse_args(argv)

    args.dirs = split_list(args.dirs, environ.get("KSBUILDER_DIR"))
    args.files = split_list(args.files, environ.get("KSBUILDER_FILE"))

    if not args.out:
        raise ConfigurationError(
            "No output file specified. Please use --out $FILE or set environment variable KSBUILDER_OUT."
        )
    if not args.password:
        print(f"WARN: password was not set, defaulting to '{DEFAULT_PASSWORD}'.", file=sys.stderr)
        args.password = DEFAULT_PASSWORD
    return args


def build_keystore(paths):
    """Classify the keys and certificates of ``paths`` in file, then block, order."""
    ks = Keystore()
    for path in paths:
        keys, certs = load_objects(path)
        try:
            for key, origin in keys:
                ks.add_key(key, origin=origin, source=path)
            for cert in certs:
                ks.add_certificate(cert)
        except KsBuilderError as e:
            raise type(e)(f"failed to add contents of {path}: {e}") from e
    return ks


def write_output(path, payload, mode=OUTPUT_MODE):
    """Write ``payload`` to ``path``, replacing any existing file."""
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.chmod(path, mode)
    except OSError as e:
        raise WriteError(f"failed to write {path}: {e}") from e


def run(args):
    print(f"certdirs = {args.dirs}")
    print(f"certfiles = {args.files}")
    print(f"outfile = {args.out}")
    print(f"storepass = {'*' * len(args.password)}")
    print(f"recurse = {args.recursive}")

    paths = collect_files(args.dirs, args.files, recursive=args.recursive)
    print(f"INFO: Loading {len(paths)} file(s)...")
    ks = build_keystore(paths)

    for line in ks.describe():
        print(line)

    payload = assemble(ks, args.password)

    print(f"Writing {ks.mode} to {args.out}...")
    write_output(args.out, payload)
    print(f"Successfully completed {ks.mode} generation and saved to {args.out}.")
    return ks


def main(argv=None):
    try:
        run(parse_args(argv))
    except KsBuilderError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
