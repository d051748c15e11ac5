import argparse

import uvicorn


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(prog="txbench", description="Mempool benchmark harness")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="run the HTTP service (default)")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    keys = sub.add_parser("keys", help="generate a wallets file with fresh seeds")
    keys.add_argument("count", type=int)
    keys.add_argument("-o", "--output", default="wallets.json")
    keys.add_argument("--algorithm", choices=["secp256k1", "ed25519"], default="secp256k1")

    args = parser.parse_args(argv)

    if args.command == "keys":
        from txbench.node import generate_keys

        for address in generate_keys(args.output, args.count, args.algorithm):
            print(address)
        return

    host = getattr(args, "host", "0.0.0.0")
    port = getattr(args, "port", 8000)
    uvicorn.run("txbench.app:app", host=host, port=port, lifespan="on")


if __name__ == "__main__":
    main()
