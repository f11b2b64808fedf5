import pytest

CLAIMS_URL = "/api/v1/claims/"


async def _create_claim(client, payload) -> dict:
    response = await client.post(CLAIMS_URL, json=payload)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_claim(client, claim_payload, audit_logger):
    data = await _create_claim(client, claim_payload())

    assert data["status"] == "draft"
    assert data["location_id"] == "loc_test_a"
    assert data["claim_number"].startswith("CLM-")
    assert data["total_amount"] == "150.00"
    assert data["balance_due"] == "150.00"
    assert data["insured_member_id"] == "XYZ123456789"

    audit_logger.log_access.assert_awaited_once()
    kwargs = audit_logger.log_access.await_args.kwargs
    assert kwargs["action"] == "CREATE_CLAIM_SUCCESS"
    assert kwargs["resource_id"] == data["claim_id"]
    assert kwargs["user_id"] == "user_1"


@pytest.mark.asyncio
async def test_location_is_required(client, claim_payload):
    response = await client.post(CLAIMS_URL, json=claim_payload(), headers={"X-Location-Id": ""})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_location_query_parameter_is_accepted(client, claim_payload):
    data = await _create_claim(client, claim_payload())
    response = await client.get(f"{CLAIMS_URL}{data['claim_id']}", params={"locationId": "loc_test_a"},
                                headers={"X-Location-Id": ""})
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_invalid_body_is_rejected(client, claim_payload):
    payload = claim_payload(diagnosis_codes=["A", "B", "C", "D", "E"])
    response = await client.post(CLAIMS_URL, json=payload)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_other_location_cannot_read_claim(client, claim_payload):
    data = await _create_claim(client, claim_payload())

    response = await client.get(f"{CLAIMS_URL}{data['claim_id']}", headers={"X-Location-Id": "loc_test_b"})

    assert response.status_code == 404
    assert response.json()["error"] == "NotFoundError"


@pytest.mark.asyncio
async def test_list_claims_with_filters(client, claim_payload):
    await _create_claim(client, claim_payload(patient_id="contact_a"))
    await _create_claim(client, claim_payload(patient_id="contact_b"))

    response = await client.get(CLAIMS_URL, params={"patientId": "contact_b"})
    assert response.status_code == 200
    assert [c["patient_id"] for c in response.json()] == ["contact_b"]

    response = await client.get(CLAIMS_URL, params={"status": "submitted"})
    assert response.json() == []


@pytest.mark.asyncio
async def test_patch_claim(client, claim_payload):
    data = await _create_claim(client, claim_payload())

    response = await client.patch(f"{CLAIMS_URL}{data['claim_id']}",
                                  json={"prior_authorization_number": "AUTH-1", "expected_version": 1})

    assert response.status_code == 200
    assert response.json()["prior_authorization_number"] == "AUTH-1"
    assert response.json()["version"] == 2


@pytest.mark.asyncio
async def test_patch_cannot_change_status_or_identity(client, claim_payload, audit_logger):
    data = await _create_claim(client, claim_payload())
    url = f"{CLAIMS_URL}{data['claim_id']}"

    response = await client.patch(url, json={"status": "paid"})
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"
    assert audit_logger.log_access.await_args.kwargs["action"] == "UPDATE_CLAIM_FAILED"

    response = await client.patch(url, json={"claim_number": "CLM-HACKED"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_patch_with_stale_version_conflicts(client, claim_payload):
    data = await _create_claim(client, claim_payload())
    url = f"{CLAIMS_URL}{data['claim_id']}"
    await client.patch(url, json={"notes": "first"})

    response = await client.patch(url, json={"notes": "second", "expected_version": 1})
    assert response.status_code == 409
    assert response.json()["error"] == "ConflictError"


@pytest.mark.asyncio
async def test_transitions_and_history(client, claim_payload):
    data = await _create_claim(client, claim_payload())
    url = f"{CLAIMS_URL}{data['claim_id']}"

    for status in ("scrubbed", "submitted", "received", "accepted"):
        response = await client.post(f"{url}/transitions", json={"to_status": status})
        assert response.status_code == 200, response.text
        assert response.json()["status"] == status

    history = (await client.get(f"{url}/history")).json()
    assert [(h["from_status"], h["to_status"]) for h in history] == [
        (None, "draft"),
        ("draft", "scrubbed"),
        ("scrubbed", "submitted"),
        ("submitted", "received"),
        ("received", "accepted"),
    ]


@pytest.mark.asyncio
async def test_invalid_transition_is_409(client, claim_payload):
    data = await _create_claim(client, claim_payload())

    response = await client.post(f"{CLAIMS_URL}{data['claim_id']}/transitions", json={"to_status": "paid"})

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "InvalidTransitionError"
    assert body["from_status"] == "draft"
    assert body["to_status"] == "paid"


@pytest.mark.asyncio
async def test_scrub_lists_missing_fields(client, claim_payload):
    data = await _create_claim(client, claim_payload(line_items=[], insured_member_id=None))

    response = await client.post(f"{CLAIMS_URL}{data['claim_id']}/transitions", json={"to_status": "scrubbed"})

    assert response.status_code == 422
    errors = response.json()["errors"]
    assert "Missing insured member ID." in errors
    assert "Claim must have at least one line item." in errors


@pytest.mark.asyncio
async def test_cms1500_view(client, claim_payload):
    data = await _create_claim(client, claim_payload())

    response = await client.get(f"{CLAIMS_URL}{data['claim_id']}/cms1500")

    assert response.status_code == 200
    view = response.json()
    assert view["claim_number"] == data["claim_number"]
    assert view["box_2_patient_name"] == "Doe, Jane, Q"
    assert view["box_24_lines"][0]["procedure_code"] == "90834"
    assert view["box_24_lines"][0]["diagnosis_pointer"] == "A"
    assert len(view["box_24_lines"]) == 6
    assert view["box_28_total_charge"] == "150.00"


@pytest.mark.asyncio
async def test_delete_draft_claim(client, claim_payload):
    data = await _create_claim(client, claim_payload())
    url = f"{CLAIMS_URL}{data['claim_id']}"

    response = await client.delete(url)
    assert response.status_code == 204
    assert (await client.get(url)).status_code == 404


@pytest.mark.asyncio
async def test_delete_submitted_claim_is_rejected(client, claim_payload):
    data = await _create_claim(client, claim_payload())
    url = f"{CLAIMS_URL}{data['claim_id']}"
    await client.post(f"{url}/transitions", json={"to_status": "scrubbed"})

    response = await client.delete(url)
    assert response.status_code == 422
    assert (await client.get(url)).json()["status"] == "scrubbed"
