from typing import Any

import aiohttp
from aiohttp.test_utils import TestClient


async def _post(
    client: TestClient, url: str, headers: dict[str, str], **body: Any
) -> tuple[int, dict[str, Any]]:
    resp = await client.post(url, json=body, headers=headers)
    return resp.status, await resp.json()


async def _upload(client: TestClient, headers: dict[str, str], name: str) -> int:
    form = aiohttp.FormData()
    form.add_field("file", b"data", filename=name)
    resp = await client.post("/api/file/upload", data=form, headers=headers)
    assert resp.status == 200
    return int((await resp.json())["file"]["id"])


async def test_favorite_flow(client: TestClient, auth_headers: dict[str, str]) -> None:
    file_id = await _upload(client, auth_headers, "fav.txt")

    status, data = await _post(client, "/api/favorite/add", auth_headers, fileId=file_id)
    assert status == 200
    assert data == {"success": True, "count": 1}

    status, data = await _post(client, "/api/favorite/add", auth_headers, fileId=file_id)
    assert data["count"] == 0

    status, data = await _post(client, "/api/favorite/check", auth_headers, fileId=file_id)
    assert data["isFavorite"] is True

    status, data = await _post(client, "/api/favorite/list", auth_headers)
    assert data["total"] == 1
    item = data["items"][0]
    assert item["file"]["id"] == str(file_id)
    assert item["folderName"] == "Default"

    resp = await client.get("/api/favorite/folders", headers=auth_headers)
    folders = (await resp.json())["folders"]
    assert len(folders) == 1
    assert folders[0]["isDefault"] is True
    assert folders[0]["fileCount"] == 1

    status, data = await _post(
        client, "/api/favorite/remove", auth_headers, fileId=file_id
    )
    assert data["count"] == 1
    status, data = await _post(client, "/api/favorite/check", auth_headers, fileId=file_id)
    assert data["isFavorite"] is False


async def test_deleted_file_leaves_favorites(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    first = await _upload(client, auth_headers, "one.txt")
    second = await _upload(client, auth_headers, "two.txt")

    status, data = await _post(
        client, "/api/favorite/batch/add", auth_headers, idList=[first, second, 999]
    )
    assert data["count"] == 2

    await _post(client, "/api/file/delete", auth_headers, idList=[first])

    status, data = await _post(client, "/api/favorite/list", auth_headers)
    assert data["total"] == 1
    assert [i["file"]["id"] for i in data["items"]] == [str(second)]

    status, data = await _post(
        client, "/api/favorite/batch/remove", auth_headers, idList=[first, second]
    )
    assert data["count"] == 1


async def test_favorite_folder_management(
    client: TestClient, auth_headers: dict[str, str]
) -> None:
    file_id = await _upload(client, auth_headers, "a.txt")

    status, data = await _post(
        client, "/api/favorite/folder/create", auth_headers, name="Work"
    )
    assert status == 200
    work = data["folder"]
    assert work["name"] == "Work"
    assert work["isDefault"] is False

    status, data = await _post(
        client, "/api/favorite/folder/create", auth_headers, name="WORK"
    )
    assert status == 409

    await _post(
        client,
        "/api/favorite/add",
        auth_headers,
        fileId=file_id,
        folderId=int(work["id"]),
    )

    status, data = await _post(
        client,
        "/api/favorite/folder/update",
        auth_headers,
        id=int(work["id"]),
        isDefault=True,
    )
    assert data["folder"]["isDefault"] is True
    assert data["folder"]["fileCount"] == 1

    status, data = await _post(
        client, "/api/favorite/folder/delete", auth_headers, id=int(work["id"])
    )
    assert status == 400
    assert data["errorCode"] == "E400"

    status, data = await _post(
        client, "/api/favorite/folder/create", auth_headers, name="Other"
    )
    other_id = int(data["folder"]["id"])
    status, data = await _post(
        client, "/api/favorite/folder/delete", auth_headers, id=other_id
    )
    assert data == {"success": True}

    status, data = await _post(
        client, "/api/favorite/folder/delete", auth_headers, id=other_id
    )
    assert status == 404
