# main.py
from fastapi import FastAPI, Request, Body, File, Form, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi import APIRouter
import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional

from tactical_api.config.load_config import as_bool, data_paths, load_server_config
from tactical_api.controller.detection_relay import DetectionRelay
from tactical_api.controller.errors import DashboardError, NotFoundError, ParseError, ValidationError
from tactical_api.controller.file_ingest import TeamDronesFilePoller
from tactical_api.controller.mqtt_ingest import MqttTelemetryClient
from tactical_api.controller.pairing import MetadataLookup
from tactical_api.controller.publisher import UPLOAD_EVENT, BroadcastPublisher, DETECTION_EVENT
from tactical_api.controller.telemetry import TeamDroneRegistry
from tactical_api.controller.watcher import ArrivalWatcher
from tactical_api.data_processing.file_io import is_safe_filename, mime_type_for, read_bytes, read_text, run_io
from tactical_api.data_processing.scanner import IMAGE_EXTENSIONS, has_extension, list_artifacts
from tactical_api.data_processing.upload_store import build_metadata_record, resolve_upload_filename, store_upload

logger = logging.getLogger(__name__)

SERVICE_NAME = "tactical-dashboard-relay"

router = APIRouter()


@router.get("/api/health")
async def health():
    return {"status": "ok", "service": SERVICE_NAME}


@router.get("/api/debug/paths")
async def debug_paths(request: Request):
    paths = request.app.state.paths
    timeout = request.app.state.io_timeout
    detected_dir = paths["detected_dir"]
    detected_exists = await run_io(os.path.isdir, detected_dir, timeout=timeout, path=detected_dir)
    file_count = image_count = 0
    if detected_exists:
        files = await run_io(os.listdir, detected_dir, timeout=timeout, path=detected_dir)
        file_count = len(files)
        image_count = len([f for f in files if has_extension(f, IMAGE_EXTENSIONS)])
    return {
        "dataDir": paths["data_dir"],
        "detectedDir": detected_dir,
        "detectedExists": detected_exists,
        "fileCount": file_count,
        "imageCount": image_count,
    }


@router.get("/api/detected/images")
async def list_detected_images(request: Request):
    detected_dir = request.app.state.paths["detected_dir"]
    logger.info(f"[API] Listing images from: {detected_dir}")
    images = await list_artifacts(detected_dir, timeout=request.app.state.io_timeout)
    return {"images": images, "count": len(images)}


@router.get("/api/detected/latest")
async def latest_detection(request: Request):
    return {"data": await request.app.state.relay.current_snapshot()}


@router.get("/api/detected/images/{filename}")
async def serve_detected_image(filename: str, request: Request):
    if not is_safe_filename(filename):
        raise ValidationError("Invalid filename", path=filename)

    file_path = os.path.join(request.app.state.paths["detected_dir"], filename)
    try:
        content = await read_bytes(file_path, timeout=request.app.state.io_timeout)
    except NotFoundError:
        raise NotFoundError(f"Image not found: {filename}", path=file_path)
    logger.debug(f"[API] Served image: {filename} ({len(content)} bytes)")
    return Response(content=content, media_type=mime_type_for(filename))


@router.get("/api/csv/for-image/{image_filename}")
async def csv_for_image(image_filename: str, request: Request):
    row = await request.app.state.lookup.find_metadata_for_image(image_filename)
    return {"data": row}


@router.get("/api/cameras")
async def get_cameras(request: Request):
    cameras_file = request.app.state.paths["cameras_file"]
    defaults = request.app.state.config.get("cameras", [])
    timeout = request.app.state.io_timeout
    try:
        if await run_io(os.path.exists, cameras_file, timeout=timeout, path=cameras_file):
            try:
                loaded = json.loads(await read_text(cameras_file, timeout=timeout))
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ParseError(f"Invalid cameras file: {e}", path=cameras_file)
            cameras = loaded.get("cameras") if isinstance(loaded, dict) else loaded
            if isinstance(cameras, list):
                return {"cameras": cameras, "source": "file"}
            raise ParseError("Cameras file must hold a list", path=cameras_file)
    except DashboardError as e:
        logger.warning(f"[API] Falling back to default cameras: {e.message}")
    return {"cameras": defaults, "source": "default"}


@router.post("/api/detected/upload")
async def upload_detected_image(
    request: Request,
    image: UploadFile = File(...),
    lat: Optional[str] = Form(None),
    lng: Optional[str] = Form(None),
    lon: Optional[str] = Form(None),
    height: Optional[str] = Form(None),
    timestamp: Optional[str] = Form(None),
    confidence: Optional[str] = Form(None),
    label: Optional[str] = Form(None),
):
    state = request.app.state
    content = await image.read()
    if not content:
        raise ValidationError("Uploaded image is empty")

    fields = {
        "lat": lat, "lng": lng, "lon": lon, "height": height,
        "timestamp": timestamp, "confidence": confidence, "label": label,
    }
    filename = resolve_upload_filename(image.filename)
    record = build_metadata_record(filename, fields)
    image_path, csv_path = await store_upload(
        state.paths["detected_dir"], filename, content, record, timeout=state.io_timeout
    )
    logger.info(f"[API] Stored upload {image_path}" + (f" with metadata {csv_path}" if csv_path else ""))
    if csv_path:
        state.lookup.invalidate()

    drone_updated = False
    if record is not None:
        drone_updated = await state.registry.update_entity(fields, source="upload")

    await state.publisher.broadcast(UPLOAD_EVENT, {
        "filename": filename,
        "metadata": record,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    return {"success": True, "filename": filename, "metadata": record, "droneUpdated": drone_updated}


@router.post("/api/offensive/drones/update")
async def update_team_drone(request: Request, payload: Any = Body(...)):
    drone = await request.app.state.registry.submit(payload, source="http")
    return {"success": True, "drone": drone.to_payload()}


@router.get("/api/offensive/drones")
async def get_team_drones(request: Request):
    return request.app.state.registry.snapshot()


@router.websocket("/ws")
async def push_channel(websocket: WebSocket):
    publisher = websocket.app.state.publisher
    await publisher.connect(websocket)
    try:
        while True:
            # inbound frames are ignored; the loop only detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        publisher.disconnect(websocket)


async def handle_dashboard_error(request: Request, exc: DashboardError):
    if exc.status_code >= 500:
        logger.error(f"[API] {request.url.path}: {exc.message}")
    else:
        logger.warning(f"[API] {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def handle_request_validation_error(request: Request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', 'invalid')}"
        for error in exc.errors()
    )
    return await handle_dashboard_error(request, ValidationError(problems or "Malformed request"))


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception(f"[API] Unhandled error on {request.url.path}")
    return JSONResponse(status_code=500, content={"error": "Internal error", "message": str(exc)})


def create_app(config=None):
    config = config if config is not None else load_server_config()
    logging.basicConfig(
        level=str(config.get("logging", {}).get("level") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    paths = data_paths(config)
    watcher_cfg = config.get("watcher", {})
    telemetry_cfg = config.get("telemetry", {})
    io_timeout = float(watcher_cfg.get("io_timeout_s", 5))

    app = FastAPI(title="Tactical Dashboard Relay")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get("server", {}).get("cors_origins") or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DashboardError, handle_dashboard_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
    app.include_router(router)

    publisher = BroadcastPublisher(send_timeout=io_timeout)
    lookup = MetadataLookup([paths["csv_dir"], paths["detected_dir"]], timeout=io_timeout, memoize=False)
    relay = DetectionRelay(publisher, paths["image_dir"], paths["csv_dir"], timeout=io_timeout, lookup=lookup)
    publisher.register_fallback(DETECTION_EVENT, relay.snapshot_from_disk)
    registry = TeamDroneRegistry(
        publisher,
        default_id=telemetry_cfg.get("drone_id") or "team-drone-1",
        default_name=telemetry_cfg.get("drone_name") or "Team Drone 1",
    )
    watcher = ArrivalWatcher(
        relay.publish_pair,
        paths["image_dir"],
        paths["csv_dir"],
        debounce_s=float(watcher_cfg.get("debounce_ms", 100)) / 1000.0,
    )
    file_poller = TeamDronesFilePoller(registry, paths["team_drones_file"], timeout=io_timeout)

    app.state.config = config
    app.state.paths = paths
    app.state.io_timeout = io_timeout
    app.state.publisher = publisher
    app.state.lookup = lookup
    app.state.relay = relay
    app.state.registry = registry
    app.state.watcher = watcher
    app.state.file_poller = file_poller
    app.state.mqtt = None

    @app.on_event("startup")
    async def startup_event():
        loop = asyncio.get_running_loop()
        logger.info(f"[STARTUP] DATA_DIR: {paths['data_dir']}")
        for key in ("csv_dir", "image_dir", "detected_dir"):
            directory = paths[key]
            if not os.path.isdir(directory):
                os.makedirs(directory, exist_ok=True)
                logger.warning(f"[STARTUP] Created missing directory: {directory}")

        if as_bool(watcher_cfg.get("enabled"), default=True):
            try:
                watcher.start(loop)
                lookup.memoize = True
                await relay.publish_latest_from_disk()
            except Exception as e:
                logger.error(f"[STARTUP] Artifact watcher failed to start: {e}")

        if as_bool(telemetry_cfg.get("file_poll_enabled"), default=True):
            try:
                await file_poller.ensure_file()
                file_poller.start(loop)
            except Exception as e:
                logger.error(f"[STARTUP] Telemetry file poller failed to start: {e}")

        mqtt_cfg = config.get("mqtt", {})
        if mqtt_cfg.get("broker"):
            client = MqttTelemetryClient(
                registry,
                loop,
                broker=mqtt_cfg["broker"],
                topic=mqtt_cfg.get("topic") or "tesa/team-drone/telemetry",
                port=mqtt_cfg.get("port") or 1883,
                username=mqtt_cfg.get("username") or None,
                password=mqtt_cfg.get("password") or None,
                keepalive=mqtt_cfg.get("keepalive") or 30,
                reconnect_min_s=mqtt_cfg.get("reconnect_min_s") or 1,
                reconnect_max_s=mqtt_cfg.get("reconnect_max_s") or 30,
            )
            try:
                client.start()
                app.state.mqtt = client
            except Exception as e:
                logger.error(f"[STARTUP] MQTT client failed to start: {e}")
        else:
            logger.info("[STARTUP] MQTT disabled, no broker configured")

    @app.on_event("shutdown")
    async def shutdown_event():
        watcher.stop()
        file_poller.stop()
        if app.state.mqtt is not None:
            app.state.mqtt.stop()
        await watcher.wait_idle()

    return app


if __name__ == "__main__":
    import uvicorn
    config = load_server_config()
    server_cfg = config.get("server", {})
    uvicorn.run(create_app(config), host=server_cfg.get("host") or "0.0.0.0", port=int(server_cfg.get("port") or 3000))
