"""
Entry point for running the memory service as a module.

Usage: python -m honey.gateway
"""
import logging

from dotenv import load_dotenv


def main() -> None:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    import uvicorn

    from honey import config
    from honey.gateway import create_app

    host = config.server_host()
    port = config.server_port()

    print(f"🍯 Starting Honey memory service on {host}:{port}")
    print(f"🔍 Health check: http://{host}:{port}/health")
    print()

    # uvicorn maps SIGINT/SIGTERM to lifespan shutdown, which stops the watcher and closes storage.
    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
