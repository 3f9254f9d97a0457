"""Feature store API routes."""

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from libs.api_common.response_models import HealthStatus, StandardResponse

from .core import FeatureStoreService
from .exceptions import (
    FeatureStoreError,
    IncompleteFeatureCoverage,
    NotFound,
    RunLockHeld,
    ValidationError,
    WriteConflict,
)
from .models import (
    AlertType,
    ComputationMode,
    ComputeLogResponse,
    ComputeSummary,
    DriftAlertResponse,
    FeatureDefinitionCreate,
    FeatureDefinitionResponse,
    FeatureSetCreate,
    FeatureSetResponse,
    FeatureStatisticsResponse,
    HistoricalFeatureRow,
    HistoricalFeaturesRequest,
    LineageRecord,
    MaterializationResult,
    OnlineFeatureResponse,
    RunStatus,
    Severity,
)
from .training import TrainingDatasetHandle, TrainingDatasetRequest

router = APIRouter(prefix="/feature-store", tags=["feature-store"])


def get_feature_store_service(request: Request) -> FeatureStoreService:
    """Dependency to get the feature store service built at startup."""
    service = getattr(request.app.state, "feature_store", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Feature store is not initialized",
        )
    return service


def _http_error(error: FeatureStoreError) -> HTTPException:
    if isinstance(error, ValidationError):
        return HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, NotFound):
        return HTTPException(status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, RunLockHeld | WriteConflict):
        return HTTPException(status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, IncompleteFeatureCoverage):
        return HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(error), "missing": error.missing},
        )
    return HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


# Registry


@router.post(
    "/features",
    response_model=StandardResponse[FeatureDefinitionResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Register feature definition",
    description="Register a feature, publishing a new version when it changed.",
)
async def register_feature(
    definition: FeatureDefinitionCreate,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[FeatureDefinitionResponse]:
    try:
        feature_id = await service.registry.register(definition)
        feature = await service.registry.get(feature_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[FeatureDefinitionResponse](
        success=True,
        data=feature,
        message=f"Feature registered at version {feature.version}",
    )


@router.get(
    "/features",
    response_model=StandardResponse[list[FeatureDefinitionResponse]],
    summary="List features",
)
async def list_features(
    feature_group: str | None = Query(None, description="Filter by feature group"),
    computation_mode: ComputationMode | None = Query(
        None, description="Filter by computation mode"
    ),
    active_only: bool = Query(False, description="Only active features"),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[FeatureDefinitionResponse]]:
    features = await service.registry.list_features(
        feature_group=feature_group,
        computation_mode=computation_mode,
        active_only=active_only,
    )
    return StandardResponse[list[FeatureDefinitionResponse]](
        success=True,
        data=features,
        message=f"Retrieved {len(features)} features",
    )


@router.get(
    "/features/{feature_id}",
    response_model=StandardResponse[FeatureDefinitionResponse],
    summary="Get feature definition",
)
async def get_feature(
    feature_id: str,
    version: int | None = Query(None, ge=1, description="Specific version"),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[FeatureDefinitionResponse]:
    try:
        feature = await service.registry.get(feature_id, version)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[FeatureDefinitionResponse](success=True, data=feature)


@router.get(
    "/features/{feature_id}/versions",
    response_model=StandardResponse[list[FeatureDefinitionResponse]],
    summary="List feature versions",
)
async def list_feature_versions(
    feature_id: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[FeatureDefinitionResponse]]:
    try:
        versions = await service.registry.list_versions(feature_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[list[FeatureDefinitionResponse]](
        success=True, data=versions
    )


@router.post(
    "/features/{feature_id}/deactivate",
    response_model=StandardResponse[FeatureDefinitionResponse],
    summary="Deactivate feature",
    description="Exclude a feature from new runs; history stays readable.",
)
async def deactivate_feature(
    feature_id: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[FeatureDefinitionResponse]:
    try:
        await service.registry.deactivate(feature_id)
        feature = await service.registry.get(feature_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[FeatureDefinitionResponse](
        success=True, data=feature, message="Feature deactivated"
    )


@router.get(
    "/features/{feature_id}/lineage",
    response_model=StandardResponse[list[LineageRecord]],
    summary="Get feature lineage",
)
async def get_feature_lineage(
    feature_id: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[LineageRecord]]:
    try:
        lineage = await service.registry.get_lineage(feature_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[list[LineageRecord]](success=True, data=lineage)


@router.get(
    "/lineage/tables/{table_name}/dependents",
    response_model=StandardResponse[list[str]],
    summary="Features depending on a source table",
)
async def get_table_dependents(
    table_name: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[str]]:
    dependents = await service.registry.get_dependents(table_name)
    return StandardResponse[list[str]](success=True, data=dependents)


@router.post(
    "/feature-sets",
    response_model=StandardResponse[FeatureSetResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create feature set",
)
async def create_feature_set(
    feature_set: FeatureSetCreate,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[FeatureSetResponse]:
    try:
        feature_set_id = await service.registry.create_feature_set(feature_set)
        created = await service.registry.get_feature_set(feature_set_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[FeatureSetResponse](
        success=True, data=created, message="Feature set created"
    )


@router.get(
    "/feature-sets",
    response_model=StandardResponse[list[FeatureSetResponse]],
    summary="List feature sets",
)
async def list_feature_sets(
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[FeatureSetResponse]]:
    feature_sets = await service.registry.list_feature_sets()
    return StandardResponse[list[FeatureSetResponse]](success=True, data=feature_sets)


@router.get(
    "/feature-sets/{feature_set_id}",
    response_model=StandardResponse[FeatureSetResponse],
    summary="Get feature set",
)
async def get_feature_set(
    feature_set_id: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[FeatureSetResponse]:
    try:
        feature_set = await service.registry.get_feature_set(feature_set_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[FeatureSetResponse](success=True, data=feature_set)


# Materialization


@router.post(
    "/features/{feature_id}/materialize",
    response_model=StandardResponse[MaterializationResult],
    summary="Materialize batch feature",
    description="Run one batch materialization now; 409 while another run holds the lock.",
)
async def materialize_feature(
    feature_id: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[MaterializationResult]:
    try:
        result = await service.batch.materialize(feature_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[MaterializationResult](
        success=True,
        data=result,
        message=f"Materialized {result.rows_processed} rows",
    )


@router.get(
    "/compute-logs",
    response_model=StandardResponse[list[ComputeLogResponse]],
    summary="List compute logs",
)
async def list_compute_logs(
    feature_id: str | None = Query(None, description="Filter by feature"),
    run_status: RunStatus | None = Query(
        None, alias="status", description="Filter by run status"
    ),
    limit: int = Query(100, ge=1, le=1000),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[ComputeLogResponse]]:
    logs = await service.locks.compute_logs(feature_id, run_status, limit)
    return StandardResponse[list[ComputeLogResponse]](success=True, data=logs)


@router.get(
    "/features/{feature_id}/compute-summary",
    response_model=StandardResponse[ComputeSummary],
    summary="Feature run health",
)
async def get_compute_summary(
    feature_id: str,
    since: datetime | None = Query(None, description="Only runs started after"),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[ComputeSummary]:
    summary = await service.locks.compute_summary(feature_id, since)
    return StandardResponse[ComputeSummary](success=True, data=summary)


# Retrieval


@router.get(
    "/online/{entity_type}/{entity_id}",
    response_model=StandardResponse[OnlineFeatureResponse],
    summary="Get online features",
    description="Current feature vector of an entity; 404 when none exists.",
)
async def get_online_features(
    entity_type: str,
    entity_id: str,
    feature_ids: list[str] | None = Query(None, description="Restrict to features"),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[OnlineFeatureResponse]:
    try:
        vector = await service.get_online_features(entity_id, entity_type, feature_ids)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[OnlineFeatureResponse](success=True, data=vector)


@router.post(
    "/historical",
    response_model=StandardResponse[list[HistoricalFeatureRow]],
    summary="Get historical features",
    description="Point-in-time correct feature values for entity/timestamp pairs.",
)
async def get_historical_features(
    request: HistoricalFeaturesRequest,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[HistoricalFeatureRow]]:
    try:
        rows = await service.get_historical_features(
            request.entities, request.feature_set_id
        )
    except FeatureStoreError as e:
        raise _http_error(e) from e

    incomplete = sum(1 for row in rows if not row.is_complete)
    return StandardResponse[list[HistoricalFeatureRow]](
        success=True,
        data=rows,
        message=f"{len(rows)} rows, {incomplete} incomplete",
    )


@router.post(
    "/training-datasets",
    response_model=StandardResponse[TrainingDatasetHandle],
    status_code=status.HTTP_201_CREATED,
    summary="Build training dataset",
)
async def build_training_dataset(
    request: TrainingDatasetRequest,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[TrainingDatasetHandle]:
    try:
        handle = await service.training.build(
            request.label_query,
            request.feature_set_id,
            request.window,
            name=request.name,
            strict=request.strict,
        )
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[TrainingDatasetHandle](
        success=True,
        data=handle,
        message=f"Built dataset with {handle.row_count} rows",
    )


@router.get(
    "/training-datasets",
    response_model=StandardResponse[list[TrainingDatasetHandle]],
    summary="List training datasets",
)
async def list_training_datasets(
    feature_set_id: str | None = Query(None, description="Filter by feature set"),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[TrainingDatasetHandle]]:
    datasets = await service.training.list_datasets(feature_set_id)
    return StandardResponse[list[TrainingDatasetHandle]](success=True, data=datasets)


@router.get(
    "/training-datasets/{dataset_id}",
    response_model=StandardResponse[TrainingDatasetHandle],
    summary="Get training dataset",
)
async def get_training_dataset(
    dataset_id: str,
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[TrainingDatasetHandle]:
    try:
        handle = await service.training.get_dataset(dataset_id)
    except FeatureStoreError as e:
        raise _http_error(e) from e

    return StandardResponse[TrainingDatasetHandle](success=True, data=handle)


# Monitoring


@router.get(
    "/features/{feature_id}/statistics",
    response_model=StandardResponse[list[FeatureStatisticsResponse]],
    summary="Get daily feature statistics",
)
async def get_feature_statistics(
    feature_id: str,
    start_date: date | None = Query(None, description="First day, inclusive"),
    end_date: date | None = Query(None, description="Last day, inclusive"),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[FeatureStatisticsResponse]]:
    statistics = await service.statistics.get_statistics(
        feature_id, start_date, end_date
    )
    return StandardResponse[list[FeatureStatisticsResponse]](
        success=True, data=statistics
    )


@router.get(
    "/alerts",
    response_model=StandardResponse[list[DriftAlertResponse]],
    summary="List monitoring alerts",
)
async def list_alerts(
    feature_id: str | None = Query(None, description="Filter by feature"),
    alert_type: AlertType | None = Query(None, description="Filter by alert type"),
    severity: Severity | None = Query(None, description="Filter by severity"),
    since: date | None = Query(None, description="Evaluation date lower bound"),
    limit: int = Query(100, ge=1, le=1000),
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[list[DriftAlertResponse]]:
    alerts = await service.monitor.list_alerts(
        feature_id=feature_id,
        alert_type=alert_type,
        severity=severity,
        since=since,
        limit=limit,
    )
    return StandardResponse[list[DriftAlertResponse]](success=True, data=alerts)


@router.get(
    "/health",
    response_model=StandardResponse[HealthStatus],
    summary="Feature store health",
)
async def health_check(
    service: FeatureStoreService = Depends(get_feature_store_service),
) -> StandardResponse[HealthStatus]:
    checks = await service.health_check()
    return StandardResponse[HealthStatus](
        success=checks["status"] == "healthy",
        data=HealthStatus(status=checks["status"], checks=checks, version="1.0.0"),
    )
