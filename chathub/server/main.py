import asyncio
import typer
from grpc import aio
from typing import Optional
from .coordinator import ChatCoordinator
from .service import ChatService, logger  # Reuse the same logger
from .hub import Hub
from ..utils.config import ServerConfig, DEFAULT_GROUPS
from ..utils.logger import configure_loggers

app = typer.Typer(help="Real-time chat server (gRPC)")


def build_server(config: ServerConfig):
    """Assemble the gRPC server and the chat engine behind it.
    
    Args:
        config (ServerConfig): Instance settings
        
    Returns:
        Tuple[aio.Server, ChatCoordinator]: Server bound to config.listen_addr
        and the coordinator it serves
    """
    server = aio.server()
    coordinator = ChatCoordinator.from_config(config, hub=Hub())
    if config.seed_default_groups:
        coordinator.seed_groups(DEFAULT_GROUPS)
    server.add_generic_rpc_handlers((ChatService(coordinator).generic_handler(),))
    server.add_insecure_port(config.listen_addr)
    return server, coordinator


async def serve(config: Optional[ServerConfig] = None):
    """Start the chat server and run until terminated.
    
    Side Effects:
        - Starts gRPC server and the typing sweep
        - Logs server startup progress
    """
    config = config or ServerConfig.from_env()
    configure_loggers(config.log_dir, config.log_level)
    server, coordinator = build_server(config)
    logger.info(f"Server {config.instance_id} starting, listening on {config.listen_addr}")
    await server.start()
    coordinator.start()
    logger.info(f"Server {config.instance_id} is now running on {config.listen_addr}")
    try:
        await server.wait_for_termination()
    finally:
        await coordinator.close()
        await server.stop(grace=None)


@app.command("serve")
def serve_cmd(
    host: Optional[str] = typer.Option(None, help="Address to bind (CHATHUB_HOST)"),
    port: Optional[int] = typer.Option(None, help="Port to listen on (CHATHUB_PORT)"),
    instance_id: Optional[str] = typer.Option(None, help="Instance label (CHATHUB_INSTANCE_ID)"),
    seed_groups: Optional[bool] = typer.Option(None, help="Create the default groups at startup"),
    log_dir: Optional[str] = typer.Option(None, help="Directory for server.log (CHATHUB_LOG_DIR)"),
    log_level: Optional[str] = typer.Option(None, help="Console log level (CHATHUB_LOG_LEVEL)"),
):
    """
    Run one chat instance.
    
    Command line options override CHATHUB_* environment variables.
    """
    config = ServerConfig.from_env()
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if instance_id is not None:
        config.instance_id = instance_id
    if seed_groups is not None:
        config.seed_default_groups = seed_groups
    if log_dir is not None:
        config.log_dir = log_dir
    if log_level is not None:
        config.log_level = log_level
    asyncio.run(serve(config))


if __name__ == "__main__":
    app()
