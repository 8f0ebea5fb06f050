"""附件处理：读取并编码附件 (materializer)、墨迹栅格化 (ink_export)、远端文件句柄缓存 (file_cache)。"""
