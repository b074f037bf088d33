"""Command line entry point: serve a directory, browse catalogs, dump pages."""

import argparse
import json
import os
import sys

from cbzshelf import server
from cbzshelf.archive import extract_pages, list_pages, read_archive
from cbzshelf.catalog import CatalogClient, normalize_url
from cbzshelf.errors import AuthError, ComicError
from cbzshelf.library import Library, filter_tree
from cbzshelf.store import JsonCredentialStore

CBZSHELF_DATA_DIR = os.environ.get("CBZSHELF_DATA_DIR", os.path.join(os.path.expanduser("~"), ".cbzshelf"))


def _store():
    return JsonCredentialStore(os.path.join(CBZSHELF_DATA_DIR, "servers.json"))


def print_tree(node, depth=0, out=None):
    out = out or sys.stdout
    pad = "  " * depth
    if node.name:
        print(f"{pad}{node.name}/ ({len(node.comics)})", file=out)
        pad += "  "
    for sub in node.subfolders.values():
        print_tree(sub, depth + (1 if node.name else 0), out)
    for comic in node.comics:
        print(f"{pad}{comic.name}", file=out)


def _show(library, query):
    tree = filter_tree(library.tree(), query)
    if tree is None:
        print("No comics found", file=sys.stderr)
        return 1
    print_tree(tree)
    return 0


def cmd_list(args):
    library = Library()
    for rel in server.scan_comics(args.dir):
        parts = rel.split("/")
        try:
            library.add_local(os.path.join(args.dir, *parts), folder_path=parts[:-1])
        except ComicError as e:
            print(f"  skipped {rel}: {e}", file=sys.stderr)
    return _show(library, args.search)


def cmd_pages(args):
    try:
        data = read_archive(args.archive)
        if not args.out:
            for name in list_pages(data):
                print(name)
            return 0
        os.makedirs(args.out, exist_ok=True)
        pages = extract_pages(data)
    except ComicError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    width = len(str(len(pages)))
    for i, page in enumerate(pages, 1):
        ext = os.path.splitext(page.name)[1].lower()
        with open(os.path.join(args.out, f"{i:0{width}d}{ext}"), "wb") as f:
            f.write(page.data)
    print(f"Extracted {len(pages)} pages to {args.out}")
    return 0


def cmd_catalog(args):
    client = CatalogClient(store=_store())
    if args.url:
        try:
            if args.save:
                client.add_server(args.url, args.password)
            else:
                comics = client.list_catalog(args.url, args.password)
                client.library.replace_server(normalize_url(args.url), comics)
        except AuthError as e:
            print(f"{e}: pass --password", file=sys.stderr)
            return 2
        except ComicError as e:
            print(str(e), file=sys.stderr)
            return 1
    else:
        for url, err in client.load_saved_servers().items():
            print(f"  {url}: {err}", file=sys.stderr)
    if args.json:
        print(json.dumps(client.library.tree().to_dict(), indent=2, ensure_ascii=False))
        return 0
    return _show(client.library, args.search)


def cmd_serve(args):
    if args.dir:
        server.COMICS_DIR = args.dir
    if args.password is not None:
        server.SERVER_PASSWORD = args.password
    server.serve(args.host, args.port)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="cbzshelf", description="CBZ comic library tools")
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Serve a comics directory over HTTP")
    p_serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "3000")))
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--dir", help="Comics directory (default: $COMICS_DIR)")
    p_serve.add_argument("--password", help="Require this password (default: $SERVER_PASSWORD)")

    p_list = sub.add_parser("list", help="Show the folder tree of a local directory")
    p_list.add_argument("dir")
    p_list.add_argument("--search", default="")

    p_pages = sub.add_parser("pages", help="List or extract the pages of an archive")
    p_pages.add_argument("archive")
    p_pages.add_argument("--out", help="Write pages to this directory")

    p_cat = sub.add_parser("catalog", help="Browse a remote server (or all saved servers)")
    p_cat.add_argument("url", nargs="?")
    p_cat.add_argument("--password")
    p_cat.add_argument("--save", action="store_true", help="Remember the server and password")
    p_cat.add_argument("--search", default="")
    p_cat.add_argument("--json", action="store_true")

    args = parser.parse_args(argv)
    handlers = {"serve": cmd_serve, "list": cmd_list, "pages": cmd_pages, "catalog": cmd_catalog}
    if args.command not in handlers:
        parser.print_help()
        return 1
    return handlers[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
