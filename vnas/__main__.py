if __name__ == '__main__':
    import uvicorn

    from vnas.config import settings

    uvicorn.run(
        'vnas.main:app',
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level,
    )
