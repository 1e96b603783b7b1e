from __future__ import annotations

import logging
from datetime import datetime

import pandas as pd
import streamlit as st

from gen_studio import library
from gen_studio.artifact import build_download_artifact
from gen_studio.config import load_config, validate_runtime
from gen_studio.credentials import MissingCredentialError
from gen_studio.image_generation import ImageGenerationError, ImageRequest, compose_prompt, generate_image
from gen_studio.input_parser import build_video_tasks, parse_prompt_inputs, parse_video_task_inputs
from gen_studio.models import IN_FLIGHT_PHASES, ParseFailure, TaskPhase
from gen_studio.runner import start_batch_in_background
from gen_studio.storage import STYLES_DOC, REFERENCES_DOC, DocumentStore
from gen_studio.tasks import DuplicateTaskError, VideoTaskStore


logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(name)s - %(message)s")

st.set_page_config(page_title="生成工作台", layout="wide")
st.title("图片 / 视频生成工作台")

config = load_config()
store = DocumentStore(config.data_dir)
task_store = VideoTaskStore(store)

st.caption(
    "当前配置: "
    f"data={config.data_dir} | "
    f"public={config.public_dir} | "
    f"poll_interval_sec={config.poll_interval_sec} | "
    f"max_poll_attempts={config.max_poll_attempts} | "
    f"request_retries={config.request_retries}"
)

runtime_errors = validate_runtime(config)
if runtime_errors:
    st.error("运行前置检查未通过：\n- " + "\n- ".join(runtime_errors))

if "gs_batch_logs" not in st.session_state:
    st.session_state["gs_batch_logs"] = []
if "gs_batch_thread" not in st.session_state:
    st.session_state["gs_batch_thread"] = None


def _show_failures(failures: list[ParseFailure]) -> None:
    if failures:
        st.warning("\n".join(f"第 {item.index + 1} 行: {item.error} ({item.raw})" for item in failures))


def _batch_running() -> bool:
    thread = st.session_state.get("gs_batch_thread")
    return bool(thread and thread.is_alive())


video_tab, prompt_tab, style_tab, reference_tab, key_tab, settings_tab = st.tabs(
    ["视频任务", "提示词", "风格库", "参考图", "密钥", "设置"]
)

with video_tab:
    settings = library.load_settings(store)

    with st.expander("新建视频任务", expanded=False):
        prompt_col, url_col = st.columns(2)
        with prompt_col:
            prompt_input = st.text_area(
                "提示词（每行一条，仅一条时所有图片共用）",
                height=180,
                placeholder="1. 镜头缓慢推进，人物微笑\n2. 海浪拍打礁石",
            )
        with url_col:
            image_input = st.text_area(
                "参考图片链接（每行一条，可留空）",
                height=180,
                placeholder="https://example.com/a.png\nhttps://example.com/b.png",
            )
        seeds_input = st.text_input("Seeds（可选）")
        uploaded_file = st.file_uploader(
            "可选文件上传（CSV: prompt,image_url；Excel: 提示词,图片链接）",
            type=["csv", "xlsx", "xlsm"],
        )

        if st.button("添加任务"):
            rows, failures = parse_video_task_inputs(
                prompt_text=prompt_input,
                image_url_text=image_input,
                upload_file_name=uploaded_file.name if uploaded_file else None,
                upload_bytes=uploaded_file.getvalue() if uploaded_file else None,
            )
            _show_failures(failures)
            if rows:
                try:
                    created = task_store.add_tasks(build_video_tasks(rows, settings.video, seeds_input))
                except DuplicateTaskError as exc:
                    st.error(str(exc))
                else:
                    st.success(f"已添加 {len(created)} 个视频任务")
            elif not failures:
                st.warning("请输入至少一条有效数据。")

    tasks = task_store.list_tasks()
    numbers = [task.number for task in tasks]
    selected = st.multiselect("选择任务（留空表示全部待处理任务）", numbers)

    action_cols = st.columns(5)
    if action_cols[0].button("开始生成", type="primary", disabled=_batch_running()):
        logs: list[str] = []
        st.session_state["gs_batch_logs"] = logs

        def log_cb(message: str) -> None:
            ts = datetime.now().strftime("%H:%M:%S")
            logs.append(f"[{ts}] {message}")

        try:
            result, thread = start_batch_in_background(
                store, selected or None, config=config, log_cb=log_cb
            )
        except MissingCredentialError as exc:
            st.error(str(exc))
        else:
            st.session_state["gs_batch_thread"] = thread
            (st.success if result.success else st.info)(result.message)

    if action_cols[1].button("重置所选", disabled=not selected):
        for number in selected:
            task_store.reset_task(number)
        st.rerun()
    if action_cols[2].button("删除所选", disabled=not selected):
        for number in selected:
            task_store.remove_task(number)
        st.rerun()
    if action_cols[3].button("清空全部", disabled=_batch_running()):
        task_store.clear_tasks()
        st.rerun()

    export_targets = [task for task in tasks if not selected or task.number in selected]
    mime, file_name, payload = build_download_artifact(export_targets, config.public_dir)
    action_cols[4].download_button(f"导出：{file_name}", data=payload, file_name=file_name, mime=mime)

    @st.fragment(run_every=5)
    def task_board() -> None:
        current = task_store.list_tasks()
        running = sum(1 for task in current if task.phase in IN_FLIGHT_PHASES)
        succeeded = sum(1 for task in current if task.phase is TaskPhase.SUCCEEDED)
        failed = sum(1 for task in current if task.phase is TaskPhase.FAILED)
        st.caption(f"共 {len(current)} 个 | 进行中 {running} | 成功 {succeeded} | 失败 {failed}")

        table_rows = [
            {
                "编号": task.number,
                "提示词": task.prompt,
                "状态": task.status,
                "进度": 100 if task.phase is TaskPhase.SUCCEEDED else task.progress,
                "错误": task.error_msg,
                "本地文件": task.local_path,
                "更新时间": task.updated_at,
            }
            for task in current
        ]
        st.dataframe(
            pd.DataFrame(table_rows),
            use_container_width=True,
            column_config={"进度": st.column_config.ProgressColumn(min_value=0, max_value=100)},
        )

        logs = st.session_state.get("gs_batch_logs", [])
        st.code("\n".join(logs[-200:]) if logs else "(无日志)")

    task_board()

with prompt_tab:
    style_data = store.read(STYLES_DOC)
    reference_data = store.read(REFERENCES_DOC)

    with st.expander("批量导入提示词（会覆盖现有列表）", expanded=False):
        bulk_text = st.text_area("每行一条，可写作 编号,提示词", height=150)
        bulk_csv = st.file_uploader("或上传 CSV（number,prompt）", type=["csv"], key="prompt_csv")
        if st.button("导入"):
            rows, failures = parse_prompt_inputs(bulk_text, bulk_csv.getvalue() if bulk_csv else None)
            _show_failures(failures)
            try:
                imported = library.replace_prompts(store, [(row.number, row.prompt) for row in rows])
            except ValueError as exc:
                st.error(str(exc))
            else:
                st.success(f"已导入 {len(imported)} 条提示词")

    new_prompt = st.text_input("新增提示词")
    if st.button("添加提示词") and new_prompt.strip():
        library.add_prompt(store, new_prompt)
        st.rerun()

    styles = style_data.get("styles", [])
    style_names = {style["id"]: style["name"] for style in styles}
    style_id = st.selectbox(
        "附加风格", [""] + list(style_names), format_func=lambda key: style_names.get(key, "不使用")
    )
    references = [image for category in reference_data.get("categories", []) for image in category.get("images", [])]
    reference_names = {image["id"]: image["name"] for image in references}
    reference_ids = st.multiselect(
        "参考图", list(reference_names), format_func=lambda key: reference_names.get(key, key)
    )

    for record in library.list_prompts(store):
        cols = st.columns([1, 6, 1, 1, 1])
        cols[0].write(record.get("number") or "-")
        cols[1].write(record["prompt"])
        cols[2].write(record.get("status", ""))
        if cols[3].button("生成", key=f"gen_{record['id']}"):
            style_content = next((s["content"] for s in styles if s["id"] == style_id), "")
            try:
                result = generate_image(
                    store,
                    ImageRequest(
                        prompt_id=record["id"],
                        final_prompt=compose_prompt(record["prompt"], style_content),
                        number=record.get("number", ""),
                        reference_ids=reference_ids,
                    ),
                    config=config,
                )
            except ImageGenerationError as exc:
                st.error(str(exc))
            else:
                if style_id:
                    library.mark_style_used(store, style_id)
                if result.success:
                    st.image(result.image_url if result.image_url.startswith("http") else result.file_path)
                else:
                    st.error(result.message)
        if cols[4].button("删除", key=f"del_{record['id']}"):
            library.delete_prompt(store, record["id"])
            st.rerun()
        if record.get("errorMsg"):
            st.caption(f"错误: {record['errorMsg']}")

with style_tab:
    style_data = store.read(STYLES_DOC)
    categories = {category["id"]: category["name"] for category in style_data.get("categories", [])}

    with st.form("style_form", clear_on_submit=True):
        name = st.text_input("风格名称")
        category_id = st.selectbox("分类", list(categories), format_func=lambda key: categories[key])
        content = st.text_area("风格内容")
        if st.form_submit_button("保存风格"):
            try:
                library.add_style(store, name, category_id, content)
            except (ValueError, library.NotFoundError) as exc:
                st.error(str(exc))

    with st.form("style_category_form", clear_on_submit=True):
        category_name = st.text_input("新分类名称")
        category_description = st.text_input("描述")
        if st.form_submit_button("添加分类"):
            try:
                library.add_style_category(store, category_name, category_description)
            except ValueError as exc:
                st.error(str(exc))

    for style in store.read(STYLES_DOC).get("styles", []):
        cols = st.columns([2, 5, 1, 1])
        cols[0].write(f"{style['name']}（{categories.get(style['categoryId'], '-')}）")
        cols[1].write(style["content"])
        cols[2].write(f"使用 {style.get('usageCount', 0)} 次")
        if cols[3].button("删除", key=f"style_del_{style['id']}"):
            library.delete_style(store, style["id"])
            st.rerun()

    for category_id, category_name in categories.items():
        if category_id == library.DEFAULT_CATEGORY_ID:
            continue
        if st.button(f"删除分类：{category_name}", key=f"style_cat_del_{category_id}"):
            library.delete_style_category(store, category_id)
            st.rerun()

with reference_tab:
    reference_data = store.read(REFERENCES_DOC)
    categories = {category["id"]: category["name"] for category in reference_data.get("categories", [])}

    with st.form("reference_form", clear_on_submit=True):
        name = st.text_input("参考图名称")
        category_id = st.selectbox("分类", list(categories), format_func=lambda key: categories[key])
        description = st.text_input("描述")
        url = st.text_input("图片URL（与上传二选一）")
        upload = st.file_uploader("上传图片", type=["png", "jpg", "jpeg", "gif", "webp"])
        if st.form_submit_button("保存参考图"):
            try:
                library.add_reference_image(
                    store,
                    category_id,
                    name,
                    config=config,
                    url=url,
                    file_name=upload.name if upload else "",
                    file_bytes=upload.getvalue() if upload else None,
                    description=description,
                )
            except (ValueError, library.NotFoundError) as exc:
                st.error(str(exc))

    new_category = st.text_input("新分类名称", key="reference_category_name")
    if st.button("添加参考图分类") and new_category.strip():
        library.add_reference_category(store, new_category)
        st.rerun()

    for category in store.read(REFERENCES_DOC).get("categories", []):
        st.subheader(category["name"])
        for image in category.get("images", []):
            cols = st.columns([2, 4, 1])
            cols[0].write(image["name"])
            cols[1].write(image.get("url") or image.get("path"))
            if cols[2].button("删除", key=f"ref_del_{image['id']}"):
                library.delete_reference_image(store, category["id"], image["id"], config)
                st.rerun()
        if category["id"] != library.DEFAULT_CATEGORY_ID and st.button(
            "删除该分类", key=f"ref_cat_del_{category['id']}"
        ):
            library.delete_reference_category(store, category["id"], config)
            st.rerun()

with key_tab:
    with st.form("key_form", clear_on_submit=True):
        name = st.text_input("名称")
        platform = st.selectbox("平台", library.API_PLATFORMS)
        api_key = st.text_input("API密钥", type="password")
        if st.form_submit_button("添加密钥"):
            try:
                library.add_key(store, name, platform, api_key)
            except ValueError as exc:
                st.error(str(exc))

    selected_key_id = library.load_settings(store).selected_key_id
    for entry in library.list_keys(store):
        cols = st.columns([2, 2, 3, 1])
        marker = "（默认）" if entry["id"] == selected_key_id else ""
        cols[0].write(f"{entry['name']}{marker}")
        cols[1].write(entry["platform"])
        cols[2].write(f"{entry['apiKey'][:4]}****{entry['apiKey'][-4:]}")
        if cols[3].button("删除", key=f"key_del_{entry['id']}"):
            library.delete_key(store, entry["id"])
            st.rerun()

with settings_tab:
    current = library.load_settings(store)
    key_names = {entry["id"]: entry["name"] for entry in library.list_keys(store)}

    with st.form("settings_form"):
        key_options = [""] + list(key_names)
        current.selected_key_id = st.selectbox(
            "图片生成默认密钥",
            key_options,
            index=key_options.index(current.selected_key_id) if current.selected_key_id in key_options else 0,
            format_func=lambda key: key_names.get(key, "未选择"),
        )
        current.thread_count = int(st.number_input("并发数", 1, 2000, current.thread_count))
        current.retry_count = int(st.number_input("图片生成重试次数", 0, 10, current.retry_count))
        current.save_directory = st.text_input("图片保存目录", current.save_directory)
        current.auto_save_base64 = st.checkbox("返回 base64 图片", current.auto_save_base64)
        st.markdown("**视频生成**")
        current.video.api_key = st.text_input("KIE.AI 密钥", current.video.api_key, type="password")
        current.video.save_path = st.text_input("视频保存目录", current.video.save_path)
        current.video.default_aspect_ratio = st.selectbox(
            "默认画面比例",
            ["16:9", "9:16", "Auto"],
            index=["16:9", "9:16", "Auto"].index(current.video.default_aspect_ratio)
            if current.video.default_aspect_ratio in ["16:9", "9:16", "Auto"]
            else 0,
        )
        current.video.default_watermark = st.text_input("默认水印", current.video.default_watermark)
        current.video.default_callback = st.text_input("默认回调地址", current.video.default_callback)
        current.video.enable_fallback = st.checkbox("启用备用模型", current.video.enable_fallback)
        current.video.enable_translation = st.checkbox("自动翻译提示词", current.video.enable_translation)
        if st.form_submit_button("保存设置"):
            library.save_settings(store, current)
            st.success("设置已保存")
